from __future__ import annotations

from taskswarm.specialists.base import SpecialistProfile

BACKEND_PRACTICES = {
    "rails": [
        "Follow Rails conventions and RESTful design",
        "Use service objects for complex business logic",
        "Implement proper validations and error handling",
        "Write comprehensive model and controller tests",
        "Use Strong Parameters for security",
    ],
    "django": [
        "Follow Django patterns and MVT architecture",
        "Use Django REST framework for APIs",
        "Implement proper authentication and permissions",
        "Write comprehensive unit and integration tests",
        "Use Django forms for validation",
    ],
}

DEFAULT_BACKEND_PRACTICES = [
    "Follow framework conventions and best practices",
    "Implement proper error handling and validation",
    "Write comprehensive tests",
    "Ensure security and performance",
    "Document API contracts clearly",
]


class BackendSpecialist(SpecialistProfile):
    kind = "backend"
    role = "backend"
    description = (
        "You specialize in server-side logic, APIs, database design, models, "
        "and business logic implementation."
    )
    focus = "Models, services, APIs, business logic, database operations, and security."
    coordination_note = "Always coordinate with frontend team for API contracts"

    def role_focus(self, project_type: str) -> str:
        return f"You are a Backend Developer specializing in {project_type}"

    def responsibilities(self, project_type: str) -> list[str]:
        return [
            "Implement business logic and data models",
            "Create secure and efficient API endpoints",
            "Design proper database schemas and migrations",
            f"Follow {project_type} best practices and conventions",
            "Ensure proper error handling and validation",
        ]

    def best_practices(self, project_type: str) -> list[str]:
        return list(BACKEND_PRACTICES.get(project_type, DEFAULT_BACKEND_PRACTICES))
