"""Job queue for the VPN-based provisioning variant.

An external workflow runner claims queued jobs, reports heartbeats while it
works, and finishes them as running or failed. A job that stops sending
heartbeats for JOB_TIMEOUT_SECONDS is failed by check_job_timeout().
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from agenthost.db.models import Agent, JobStatus, ProvisioningJob
from agenthost.errors.domain import ConflictError, NotFoundError
from agenthost.errors.registry import format_message

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECONDS = 60
JOB_TIMEOUT_SECONDS = 900
MAX_RETRIES = 3

IN_PROGRESS_STATUSES = (JobStatus.queued.value, JobStatus.provisioning.value)
FINISHED_STATUSES = (JobStatus.running.value, JobStatus.failed.value)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProvisioningQueue:
    """Provisioning job records.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = _utc_now) -> None:
        self.db = db
        self._clock = clock

    def enqueue(
        self,
        agent_id: str,
        trigger_id: str | None = None,
        region: str = "us-east",
    ) -> ProvisioningJob:
        """Queue a provisioning job for an agent.

        A repeated trigger_id returns the existing job instead of queuing a
        second one.

        Raises:
            NotFoundError: If the agent does not exist.
            ConflictError: If the agent's owner already has a job in progress.
        """
        if trigger_id:
            existing = (
                self.db.query(ProvisioningJob)
                .filter(ProvisioningJob.trigger_id == trigger_id)
                .first()
            )
            if existing is not None:
                logger.info("Trigger %s already queued as job %s", trigger_id, existing.id)
                return existing

        agent = self.db.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)

        in_progress = (
            self.db.query(ProvisioningJob)
            .filter(
                ProvisioningJob.user_id == agent.user_id,
                ProvisioningJob.status.in_(IN_PROGRESS_STATUSES),
            )
            .first()
        )
        if in_progress is not None:
            logger.info(
                "Concurrent provision blocked for user %s: job %s in progress",
                agent.user_id, in_progress.id,
            )
            raise ConflictError(format_message("E-4005"))

        now = self._clock().isoformat()
        job = ProvisioningJob(
            agent_id=agent_id,
            user_id=agent.user_id,
            trigger_id=trigger_id,
            region=region,
            status=JobStatus.queued.value,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        logger.info("Job %s queued for agent %s", job.id, agent_id)
        return job

    def get_job(self, job_id: str) -> ProvisioningJob | None:
        return self.db.get(ProvisioningJob, job_id)

    def require_job(self, job_id: str) -> ProvisioningJob:
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError("Provisioning job", job_id)
        return job

    def get_latest_for_agent(self, agent_id: str) -> ProvisioningJob | None:
        return (
            self.db.query(ProvisioningJob)
            .filter(ProvisioningJob.agent_id == agent_id)
            .order_by(ProvisioningJob.created_at.desc())
            .first()
        )

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        workflow_run_id: str | None = None,
        error: str | None = None,
        failed_step: str | None = None,
        instance_id: str | None = None,
    ) -> ProvisioningJob:
        """Set a job's status and optional run metadata.

        Moving to provisioning stamps claimed_at; running and failed stamp
        completed_at.
        """
        job = self.require_job(job_id)
        now = self._clock().isoformat()
        job.status = status.value
        if status == JobStatus.provisioning:
            job.claimed_at = now
        if status.value in FINISHED_STATUSES:
            job.completed_at = now
        if workflow_run_id is not None:
            job.workflow_run_id = workflow_run_id
        if error is not None:
            job.error = error
        if failed_step is not None:
            job.failed_step = failed_step
        if instance_id is not None:
            job.instance_id = instance_id
        job.updated_at = now
        self.db.commit()
        self.db.refresh(job)
        logger.info("Job %s -> %s", job_id, status.value)
        return job

    def requeue(self, job_id: str) -> ProvisioningJob:
        """Put a failed job back in the queue.

        Raises:
            ConflictError: If the job is not failed or has used up its retries.
        """
        job = self.require_job(job_id)
        if job.status != JobStatus.failed.value:
            raise ConflictError(f"Job {job_id} is {job.status}; only failed jobs can be retried")
        if job.retry_count >= MAX_RETRIES:
            raise ConflictError(
                f"Job {job_id} already retried {job.retry_count} times; contact support"
            )
        job.retry_count += 1
        job.status = JobStatus.queued.value
        job.error = None
        job.failed_step = None
        job.claimed_at = None
        job.completed_at = None
        job.last_heartbeat_at = None
        job.updated_at = self._clock().isoformat()
        self.db.commit()
        self.db.refresh(job)
        logger.info("Job %s requeued (retry %d)", job_id, job.retry_count)
        return job

    def record_heartbeat(self, job_id: str) -> bool:
        """Stamp last_heartbeat_at. Only provisioning jobs accept heartbeats.

        Returns:
            True if the heartbeat was recorded.
        """
        job = self.get_job(job_id)
        if job is None or job.status != JobStatus.provisioning.value:
            return False
        now = self._clock().isoformat()
        job.last_heartbeat_at = now
        job.updated_at = now
        self.db.commit()
        return True

    def check_job_timeout(self, job_id: str) -> bool:
        """Fail a provisioning job that has gone quiet.

        The reference time is the last heartbeat, else the claim time, else
        the last update.

        Returns:
            True if the job was timed out by this call.
        """
        job = self.get_job(job_id)
        if job is None or job.status != JobStatus.provisioning.value:
            return False

        reference = datetime.fromisoformat(
            job.last_heartbeat_at or job.claimed_at or job.updated_at
        )
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)
        now = self._clock()
        elapsed = int((now - reference).total_seconds())
        if elapsed <= JOB_TIMEOUT_SECONDS:
            return False

        logger.warning(
            "Job %s timed out after %ds (threshold %ds)", job_id, elapsed, JOB_TIMEOUT_SECONDS
        )
        job.status = JobStatus.failed.value
        job.error = format_message("E-4006", seconds=elapsed)
        job.completed_at = now.isoformat()
        job.updated_at = now.isoformat()
        self.db.commit()
        return True
