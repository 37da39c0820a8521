from taskswarm.specialists.backend import BackendSpecialist
from taskswarm.specialists.base import (
    PromptEnvironment,
    SpecialistProfile,
    project_type_of,
    sanitize_command,
    sanitize_role,
    sanitize_task,
)
from taskswarm.specialists.frontend import FrontendSpecialist
from taskswarm.specialists.general import (
    GeneralSpecialist,
    InfrastructureSpecialist,
    IntegrationSpecialist,
)
from taskswarm.specialists.qa import QASpecialist
from taskswarm.specialists.ux import UXSpecialist

SPECIALISTS: dict[str, SpecialistProfile] = {
    profile.kind: profile
    for profile in (
        BackendSpecialist(),
        FrontendSpecialist(),
        QASpecialist(),
        UXSpecialist(),
        GeneralSpecialist(),
        IntegrationSpecialist(),
        InfrastructureSpecialist(),
    )
}


def specialist_for(kind: str) -> SpecialistProfile:
    """Profile for a context kind or role; unknown names map to the generalist."""
    return SPECIALISTS.get(str(kind).strip().lower(), SPECIALISTS["general"])


__all__ = [
    "BackendSpecialist",
    "FrontendSpecialist",
    "GeneralSpecialist",
    "InfrastructureSpecialist",
    "IntegrationSpecialist",
    "PromptEnvironment",
    "QASpecialist",
    "SPECIALISTS",
    "SpecialistProfile",
    "UXSpecialist",
    "project_type_of",
    "sanitize_command",
    "sanitize_role",
    "sanitize_task",
    "specialist_for",
]
