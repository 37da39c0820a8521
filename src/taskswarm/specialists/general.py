from __future__ import annotations

from taskswarm.specialists.base import SpecialistProfile

GENERAL_DESCRIPTION = (
    "You are a general-purpose agent capable of handling various development tasks "
    "across the full stack."
)


class GeneralSpecialist(SpecialistProfile):
    kind = "general"
    role = "general"
    description = GENERAL_DESCRIPTION
    coordination_note = "Balance speed with quality and maintainability"

    def role_focus(self, project_type: str) -> str:
        return "You are a Full-Stack Developer"

    def responsibilities(self, project_type: str) -> list[str]:
        return [
            "Handle diverse development tasks across the stack",
            f"Apply best practices for {project_type}",
            "Ensure code quality and maintainability",
            "Consider system-wide implications",
            "Coordinate with specialized team members when needed",
        ]

    def best_practices(self, project_type: str) -> list[str]:
        return [
            "Follow project conventions and standards",
            "Write clean, readable, and maintainable code",
            "Implement appropriate tests",
            "Consider security and performance implications",
            "Document important decisions and changes",
            "Collaborate effectively with team members",
        ]


class IntegrationSpecialist(GeneralSpecialist):
    kind = "integration"
    coordination_note = "Ensure all pieces work together seamlessly"

    def role_focus(self, project_type: str) -> str:
        return "You are a Lead Developer responsible for integration"

    def responsibilities(self, project_type: str) -> list[str]:
        return [
            "Merge and integrate work from all team members",
            "Resolve conflicts and ensure system cohesion",
            "Perform final refactoring and optimization",
            "Validate complete feature functionality",
            "Prepare final implementation for deployment",
        ]

    def best_practices(self, project_type: str) -> list[str]:
        return [
            "Carefully review all changes before integration",
            "Resolve merge conflicts thoughtfully",
            "Ensure consistent code style across all components",
            "Validate that integrated system meets requirements",
            "Perform final testing and optimization",
            "Document any architectural decisions",
        ]


class InfrastructureSpecialist(GeneralSpecialist):
    kind = "infrastructure"
    coordination_note = "Focus on reliability and maintainability"

    def role_focus(self, project_type: str) -> str:
        return "You are a DevOps/Infrastructure specialist"

    def responsibilities(self, project_type: str) -> list[str]:
        return [
            "Configure deployment and environment setup",
            "Implement CI/CD pipelines and automation",
            "Manage dependencies and system configuration",
            "Ensure scalability and performance",
            "Handle security and monitoring setup",
        ]

    def best_practices(self, project_type: str) -> list[str]:
        return [
            "Use infrastructure as code principles",
            "Implement proper security and monitoring",
            "Ensure scalability and reliability",
            "Document deployment procedures",
            "Use automated testing for infrastructure",
            "Follow security best practices",
        ]
