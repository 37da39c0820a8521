from __future__ import annotations

from taskswarm.specialists.base import SpecialistProfile

REACT_PRACTICES = [
    "Use functional components with hooks",
    "Implement proper state management",
    "Create reusable component library",
    "Ensure accessibility and performance",
    "Follow React best practices",
]

FRONTEND_PRACTICES = {
    "rails": [
        "Use Stimulus.js for interactive behavior",
        "Follow Rails UJS patterns",
        "Implement responsive design with consistent styling",
        "Use partials and helpers for reusable components",
        "Ensure proper CSRF protection",
    ],
    "react": REACT_PRACTICES,
    "nextjs": REACT_PRACTICES,
}

DEFAULT_FRONTEND_PRACTICES = [
    "Create intuitive and accessible interfaces",
    "Implement responsive design patterns",
    "Use modern CSS and JavaScript practices",
    "Ensure cross-browser compatibility",
    "Optimize for performance",
]


class FrontendSpecialist(SpecialistProfile):
    kind = "frontend"
    role = "frontend"
    description = (
        "You specialize in user interfaces, client-side code, styling, user experience, "
        "and presentation layer."
    )
    focus = "Controllers, views, JavaScript, forms, user interactions, and integration."
    coordination_note = "Maintain component library and design system consistency"

    def role_focus(self, project_type: str) -> str:
        return f"You are a Frontend/UX Developer specializing in {project_type}"

    def responsibilities(self, project_type: str) -> list[str]:
        return [
            "Create intuitive and responsive user interfaces",
            "Implement consistent design patterns and components",
            "Ensure accessibility and cross-browser compatibility",
            "Integrate with backend APIs effectively",
            f"Follow {project_type} frontend best practices",
        ]

    def best_practices(self, project_type: str) -> list[str]:
        return list(FRONTEND_PRACTICES.get(project_type, DEFAULT_FRONTEND_PRACTICES))
