"""Tests for dashboard progress derivation and uptime."""

from datetime import datetime, timedelta, timezone

import pytest

from agenthost.db.models import AgentInstance
from agenthost.services.provisioning_steps import compute_uptime, derive_steps


def _states(instance: AgentInstance | None) -> list[str]:
    return [view.status for view in derive_steps(instance)]


class TestDeriveSteps:
    def test_no_instance(self):
        assert _states(None) == ["pending"] * 5

    def test_keys_and_labels_in_order(self):
        views = derive_steps(None)
        assert [v.key for v in views] == [
            "queued", "creating", "installing", "configuring", "running",
        ]
        assert views[1].label == "Creating Server"

    def test_pending(self):
        assert _states(AgentInstance(status="pending")) == [
            "active", "pending", "pending", "pending", "pending",
        ]

    @pytest.mark.parametrize(
        "step, expected",
        [
            (None, ["completed", "active", "pending", "pending", "pending"]),
            ("vm_booting", ["completed", "active", "pending", "pending", "pending"]),
            ("installing_packages", ["completed", "completed", "active", "pending", "pending"]),
            ("caddy_up", ["completed", "completed", "completed", "active", "pending"]),
            ("verifying_chat", ["completed", "completed", "completed", "active", "pending"]),
        ],
    )
    def test_provisioning(self, step, expected):
        assert _states(AgentInstance(status="provisioning", current_step=step)) == expected

    @pytest.mark.parametrize("status", ["running", "stopping", "stopped"])
    def test_past_provisioning_all_completed(self, status):
        assert _states(AgentInstance(status=status)) == ["completed"] * 5

    def test_failed_marks_step_in_error(self):
        instance = AgentInstance(status="failed", current_step="installing_packages")
        assert _states(instance) == ["completed", "completed", "error", "pending", "pending"]

    def test_failed_before_server_created(self):
        assert _states(AgentInstance(status="failed")) == [
            "completed", "error", "pending", "pending", "pending",
        ]


class TestUptime:
    NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_running(self):
        started = (self.NOW - timedelta(minutes=5, seconds=3)).isoformat()
        instance = AgentInstance(status="running", started_at=started)
        assert compute_uptime(instance, self.NOW) == 303

    def test_naive_timestamp_treated_as_utc(self):
        instance = AgentInstance(status="running", started_at="2026-03-01T11:59:00")
        assert compute_uptime(instance, self.NOW) == 60

    def test_clock_skew_clamped(self):
        started = (self.NOW + timedelta(seconds=10)).isoformat()
        assert compute_uptime(AgentInstance(status="running", started_at=started), self.NOW) == 0

    @pytest.mark.parametrize(
        "instance",
        [
            None,
            AgentInstance(status="stopped", started_at="2026-03-01T11:00:00+00:00"),
            AgentInstance(status="running"),
        ],
    )
    def test_none_when_not_running(self, instance):
        assert compute_uptime(instance, self.NOW) is None
