"""Service layer for agenthost.

Provides instance record management, the provisioning stepper, lifecycle
operations and credential delivery.
"""

from agenthost.services.instance_service import InstanceService, InvalidStateTransition
from agenthost.services.lifecycle import LifecycleManager
from agenthost.services.provisioning_stepper import ProvisioningStepper, StepResult

__all__ = [
    "InstanceService",
    "InvalidStateTransition",
    "LifecycleManager",
    "ProvisioningStepper",
    "StepResult",
]
