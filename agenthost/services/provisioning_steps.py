"""User-facing provisioning progress derived from an instance row.

Maps (status, current_step) to the ordered dashboard steps
queued -> creating -> installing -> configuring -> running, each marked
pending, active, completed or error.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from agenthost.db.models import AgentInstance, InstanceStatus, ProvisioningStep


class UIStep(str, Enum):
    """Dashboard progress steps, in display order."""

    queued = "queued"
    creating = "creating"
    installing = "installing"
    configuring = "configuring"
    running = "running"


class StepState(str, Enum):
    pending = "pending"
    active = "active"
    completed = "completed"
    error = "error"


UI_STEP_ORDER: tuple[UIStep, ...] = tuple(UIStep)

UI_STEP_LABELS: dict[UIStep, str] = {
    UIStep.queued: "Queued",
    UIStep.creating: "Creating Server",
    UIStep.installing: "Installing Dependencies",
    UIStep.configuring: "Configuring Agent",
    UIStep.running: "Running",
}

# Provisioning sub-state -> UI step it belongs to. None means the server
# is not created yet.
STEP_FOR_SUBSTATE: dict[ProvisioningStep | None, UIStep] = {
    None: UIStep.creating,
    ProvisioningStep.vm_booting: UIStep.creating,
    ProvisioningStep.installing_packages: UIStep.installing,
    ProvisioningStep.caddy_up: UIStep.configuring,
    ProvisioningStep.verifying_chat: UIStep.configuring,
}

_unmapped = set(ProvisioningStep) - set(STEP_FOR_SUBSTATE)
if _unmapped:
    raise RuntimeError(
        f"Provisioning steps without a UI step: {sorted(s.value for s in _unmapped)}"
    )


@dataclass(frozen=True)
class StepView:
    """One row of the dashboard progress list."""

    key: str
    label: str
    status: str


def _substate(instance: AgentInstance) -> ProvisioningStep | None:
    return ProvisioningStep(instance.current_step) if instance.current_step else None


def _build(marker: int, marker_state: StepState) -> list[StepView]:
    views = []
    for index, step in enumerate(UI_STEP_ORDER):
        if index < marker:
            state = StepState.completed
        elif index == marker:
            state = marker_state
        else:
            state = StepState.pending
        views.append(StepView(key=step.value, label=UI_STEP_LABELS[step], status=state.value))
    return views


def derive_steps(instance: AgentInstance | None) -> list[StepView]:
    """Ordered progress steps for an instance (all pending when there is none)."""
    if instance is None:
        return [
            StepView(key=step.value, label=UI_STEP_LABELS[step], status=StepState.pending.value)
            for step in UI_STEP_ORDER
        ]

    status = InstanceStatus(instance.status)
    if status == InstanceStatus.pending:
        return _build(0, StepState.active)
    if status == InstanceStatus.provisioning:
        step = STEP_FOR_SUBSTATE[_substate(instance)]
        return _build(UI_STEP_ORDER.index(step), StepState.active)
    if status == InstanceStatus.failed:
        step = STEP_FOR_SUBSTATE[_substate(instance)]
        return _build(UI_STEP_ORDER.index(step), StepState.error)
    # running, stopping, stopped
    return _build(len(UI_STEP_ORDER), StepState.completed)


def compute_uptime(instance: AgentInstance | None, now: datetime | None = None) -> int | None:
    """Whole seconds since started_at, only while running."""
    if instance is None or instance.status != InstanceStatus.running.value:
        return None
    if not instance.started_at:
        return None
    now = now or datetime.now(timezone.utc)
    started = datetime.fromisoformat(instance.started_at)
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return max(0, int((now - started).total_seconds()))
