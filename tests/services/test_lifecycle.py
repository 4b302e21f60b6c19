"""Tests for stop / start / destroy / rollback."""

from unittest.mock import MagicMock

import httpx
import pytest

from agenthost.db.models import AgentStatus, InstanceStatus, JobStatus, ProvisioningJob
from agenthost.errors import LifecycleError, NotFoundError
from agenthost.services.errors import MeshError, ProviderAPIError
from agenthost.services.hetzner_client import HetznerClient
from agenthost.services.lifecycle import DESTROY_ANNOTATION, LifecycleManager
from agenthost.services.mesh_client import MeshDevice, TailscaleClient
from tests.helpers.http import mock_client


@pytest.fixture
def provider() -> MagicMock:
    return MagicMock(spec=HetznerClient)


@pytest.fixture
def mesh() -> MagicMock:
    mock = MagicMock(spec=TailscaleClient)
    mock.find_device_by_ip.return_value = MeshDevice(
        id="dev-1", hostname="agent-1", addresses=["100.64.0.7"]
    )
    return mock


@pytest.fixture
def manager(test_db, provider, mesh) -> LifecycleManager:
    return LifecycleManager(test_db, provider, mesh)


class TestStop:
    def test_stop_running_instance(self, manager, test_db, make_agent, make_instance, provider):
        agent = make_agent()
        instance = make_instance(
            agent, status=InstanceStatus.running, server_id="42", started_at="2026-01-01T00:00:00+00:00"
        )

        stopped = manager.stop(agent.id)

        provider.shutdown_server.assert_called_once_with("42")
        assert stopped.id == instance.id
        assert stopped.status == InstanceStatus.stopped.value
        assert stopped.stopped_at is not None
        test_db.refresh(agent)
        assert agent.status == AgentStatus.paused.value

    def test_stop_without_running_instance(self, manager, make_agent, make_instance):
        agent = make_agent()
        make_instance(agent, status=InstanceStatus.stopped, server_id="42")

        with pytest.raises(LifecycleError) as exc_info:
            manager.stop(agent.id)
        assert "No running instance to stop" in str(exc_info.value)

    def test_stop_requires_server(self, manager, make_agent, make_instance):
        agent = make_agent()
        make_instance(agent, status=InstanceStatus.running)
        with pytest.raises(LifecycleError):
            manager.stop(agent.id)

    def test_failed_shutdown_restores_running(
        self, manager, test_db, make_agent, make_instance, provider
    ):
        agent = make_agent()
        started = "2026-01-01T00:00:00+00:00"
        instance = make_instance(
            agent, status=InstanceStatus.running, server_id="42", started_at=started
        )
        provider.shutdown_server.side_effect = ProviderAPIError(code="E-3001", message="down")

        with pytest.raises(ProviderAPIError):
            manager.stop(agent.id)

        test_db.refresh(instance)
        assert instance.status == InstanceStatus.running.value
        assert instance.started_at == started


class TestStart:
    def test_start_stopped_instance(self, manager, test_db, make_agent, make_instance, provider):
        agent = make_agent(gateway_token="t" * 64)
        make_instance(
            agent,
            status=InstanceStatus.stopped,
            server_id="42",
            stopped_at="2026-01-01T00:00:00+00:00",
        )

        started = manager.start(agent.id)

        provider.power_on_server.assert_called_once_with("42")
        assert started.status == InstanceStatus.running.value
        assert started.stopped_at is None
        assert started.started_at is not None
        test_db.refresh(agent)
        assert agent.status == AgentStatus.active.value
        assert agent.gateway_token == "t" * 64

    def test_start_without_stopped_instance(self, manager, make_agent, make_instance):
        agent = make_agent()
        make_instance(agent, status=InstanceStatus.running, server_id="42")
        with pytest.raises(LifecycleError) as exc_info:
            manager.start(agent.id)
        assert "No stopped instance to start" in str(exc_info.value)

    def test_failed_power_on_restores_stopped(
        self, manager, test_db, make_agent, make_instance, provider
    ):
        agent = make_agent()
        instance = make_instance(
            agent, status=InstanceStatus.stopped, server_id="42", stopped_at="2026-01-01T00:00:00+00:00"
        )
        provider.power_on_server.side_effect = ProviderAPIError(code="E-3001", message="down")

        with pytest.raises(ProviderAPIError):
            manager.start(agent.id)

        test_db.refresh(instance)
        assert instance.status == InstanceStatus.stopped.value

    def test_start_refused_while_newer_instance_pending(
        self, manager, test_db, make_agent, make_instance, provider
    ):
        agent = make_agent()
        old = make_instance(
            agent, status=InstanceStatus.stopped, server_id="41", stopped_at="2026-01-01T00:00:00+00:00"
        )
        make_instance(agent, status=InstanceStatus.pending)

        with pytest.raises(LifecycleError) as exc_info:
            manager.start(agent.id)

        assert "already has an active or pending instance" in str(exc_info.value)
        provider.power_on_server.assert_not_called()
        test_db.refresh(old)
        assert old.status == InstanceStatus.stopped.value


def _unreachable_mesh(mesh_config) -> TailscaleClient:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return TailscaleClient(mesh_config, http_client=mock_client(refuse))


class TestDestroy:
    def test_destroy_cleans_server_and_device(
        self, manager, test_db, make_agent, make_instance, provider, mesh
    ):
        agent = make_agent()
        instance = make_instance(
            agent, status=InstanceStatus.running, server_id="42", tailscale_ip="100.64.0.7"
        )

        result = manager.destroy(agent.id)

        assert result.instance_id == instance.id
        assert result.server_deleted and result.mesh_deleted
        provider.delete_server.assert_called_once_with("42")
        mesh.delete_device.assert_called_once_with("dev-1")
        test_db.refresh(instance)
        assert instance.status == InstanceStatus.stopped.value
        assert instance.error == DESTROY_ANNOTATION
        assert instance.stopped_at is not None

    def test_destroy_is_idempotent(self, manager, make_agent, make_instance):
        agent = make_agent()
        make_instance(agent, status=InstanceStatus.running, server_id="42")

        manager.destroy(agent.id)
        second = manager.destroy(agent.id)

        assert second.instance_id is not None

    def test_destroy_without_instance(self, manager, make_agent, provider):
        result = manager.destroy(make_agent().id)
        assert result.instance_id is None
        provider.delete_server.assert_not_called()

    def test_destroy_failed_instance(self, manager, test_db, make_agent, make_instance):
        agent = make_agent()
        instance = make_instance(agent, status=InstanceStatus.failed, server_id="42")
        manager.destroy(agent.id)
        test_db.refresh(instance)
        assert instance.status == InstanceStatus.stopped.value

    def test_cleanups_are_independent(
        self, manager, make_agent, make_instance, provider, mesh
    ):
        agent = make_agent()
        make_instance(
            agent, status=InstanceStatus.running, server_id="42", tailscale_ip="100.64.0.7"
        )
        provider.delete_server.side_effect = ProviderAPIError(code="E-3001", message="down")

        result = manager.destroy(agent.id)

        assert result.server_deleted is False
        assert result.mesh_deleted is True

    def test_mesh_failure_is_reported(self, manager, make_agent, make_instance, mesh):
        agent = make_agent()
        make_instance(
            agent, status=InstanceStatus.running, server_id="42", tailscale_ip="100.64.0.7"
        )
        mesh.find_device_by_ip.side_effect = MeshError(code="E-3101", message="mesh down")

        result = manager.destroy(agent.id)

        assert result.server_deleted is True
        assert result.mesh_deleted is False

    def test_unreachable_mesh_api_still_completes(
        self, test_db, app_config, make_agent, make_instance, provider
    ):
        agent = make_agent()
        instance = make_instance(
            agent, status=InstanceStatus.running, server_id="42", tailscale_ip="100.64.0.7"
        )
        manager = LifecycleManager(test_db, provider, _unreachable_mesh(app_config.mesh))

        result = manager.destroy(agent.id)

        assert result.server_deleted is True
        assert result.mesh_deleted is False
        test_db.refresh(instance)
        test_db.refresh(agent)
        assert instance.status == InstanceStatus.stopped.value
        assert agent.status == AgentStatus.paused.value


class TestRollback:
    def _job(self, test_db, agent, instance=None) -> ProvisioningJob:
        job = ProvisioningJob(
            agent_id=agent.id,
            user_id=agent.user_id,
            instance_id=instance.id if instance else None,
            status=JobStatus.provisioning.value,
        )
        test_db.add(job)
        test_db.commit()
        return job

    def test_rollback_marks_everything_failed(
        self, manager, test_db, make_agent, make_instance, provider
    ):
        agent = make_agent()
        instance = make_instance(
            agent, status=InstanceStatus.provisioning, server_id="42", tailscale_ip="100.64.0.7"
        )
        job = self._job(test_db, agent, instance)

        result = manager.rollback_failed_provision(job.id)

        assert result.server_deleted and result.mesh_deleted
        test_db.refresh(instance)
        test_db.refresh(job)
        test_db.refresh(agent)
        assert instance.status == InstanceStatus.failed.value
        assert "Cleaned: server=True, mesh=True" in instance.error
        assert job.status == JobStatus.failed.value
        assert job.completed_at is not None
        assert agent.status == AgentStatus.error.value

    def test_rollback_with_unreachable_mesh_api(
        self, test_db, app_config, make_agent, make_instance, provider
    ):
        agent = make_agent()
        instance = make_instance(
            agent, status=InstanceStatus.provisioning, server_id="42", tailscale_ip="100.64.0.7"
        )
        job = self._job(test_db, agent, instance)
        manager = LifecycleManager(test_db, provider, _unreachable_mesh(app_config.mesh))

        result = manager.rollback_failed_provision(job.id)

        assert result.server_deleted is True
        assert result.mesh_deleted is False
        test_db.refresh(instance)
        assert instance.status == InstanceStatus.failed.value
        assert "Cleaned: server=True, mesh=False" in instance.error

    def test_rollback_without_machine(self, manager, test_db, make_agent, provider):
        agent = make_agent()
        job = self._job(test_db, agent)

        result = manager.rollback_failed_provision(job.id)

        assert result.instance_id is None
        provider.delete_server.assert_not_called()
        test_db.refresh(job)
        assert job.status == JobStatus.failed.value

    def test_rollback_falls_back_to_latest_instance(
        self, manager, test_db, make_agent, make_instance
    ):
        agent = make_agent()
        instance = make_instance(agent, status=InstanceStatus.pending)
        job = self._job(test_db, agent)

        result = manager.rollback_failed_provision(job.id)

        assert result.instance_id == instance.id
        test_db.refresh(instance)
        assert instance.status == InstanceStatus.failed.value

    def test_rollback_unknown_job(self, manager):
        with pytest.raises(NotFoundError):
            manager.rollback_failed_provision("nope")
