from vm_orchestrator.models import ProvisioningPhase


# None is the position of a run that has not entered any phase yet.
ALLOWED_TRANSITIONS: dict[ProvisioningPhase | None, ProvisioningPhase | None] = {
    None: ProvisioningPhase.GENERATE_CONFIG,
    ProvisioningPhase.GENERATE_CONFIG: ProvisioningPhase.CREATE,
    ProvisioningPhase.CREATE: ProvisioningPhase.START,
    ProvisioningPhase.START: ProvisioningPhase.AWAIT_INIT,
    ProvisioningPhase.AWAIT_INIT: ProvisioningPhase.RESOLVE_ADDRESS,
    ProvisioningPhase.RESOLVE_ADDRESS: None,
}


def next_phase(current: ProvisioningPhase | None) -> ProvisioningPhase | None:
    return ALLOWED_TRANSITIONS[current]


def can_transition(
    current: ProvisioningPhase | None, target: ProvisioningPhase
) -> bool:
    return ALLOWED_TRANSITIONS.get(current) == target
