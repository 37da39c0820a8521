import pytest

from taskswarm.decomposer import TaskDecomposer, classify, decompose, decompose_subtasks


@pytest.mark.parametrize(
    ("description", "expected"),
    [
        ("add user login with API and UI", "full_feature"),
        ("Add a database migration for orders", "backend_focused"),
        ("Redesign the settings page layout", "frontend_focused"),
        ("Set up docker deployment pipeline", "infrastructure"),
        ("Refactor the logging helpers", "general"),
        ("", "general"),
    ],
)
def test_classify(description: str, expected: str) -> None:
    assert classify(description) == expected


def test_full_feature_chains_backend_frontend_qa_integration() -> None:
    subtasks = decompose_subtasks("add user login with API and UI", token="t1")

    assert [task.id for task in subtasks] == [
        "backend-t1",
        "frontend-t1",
        "qa-t1",
        "integration-t1",
    ]
    assert [task.role for task in subtasks] == ["backend", "frontend", "qa", "general"]
    assert [task.priority for task in subtasks] == [1, 2, 3, 4]
    assert subtasks[0].dependencies == []
    assert subtasks[1].dependencies == ["backend-t1"]
    assert subtasks[2].dependencies == ["backend-t1", "frontend-t1"]
    assert subtasks[3].dependencies == ["qa-t1"]
    assert subtasks[0].description.endswith("for: add user login with API and UI")
    assert subtasks[3].context is not None
    assert subtasks[3].context.coordination_note == "Ensure all pieces work together seamlessly"


def test_full_feature_plan_runs_one_role_per_phase() -> None:
    execution_plan = decompose("add user login with API and UI", token="t1")

    assert execution_plan.task_type == "full_feature"
    assert execution_plan.complete
    assert [phase.subtask_ids for phase in execution_plan.phases] == [
        ["backend-t1"],
        ["frontend-t1"],
        ["qa-t1"],
        ["integration-t1"],
    ]
    assert [phase.description for phase in execution_plan.phases] == [
        "Backend Development Phase",
        "Frontend Development Phase",
        "Quality Assurance Phase",
        "Integration & Coordination Phase",
    ]


def test_backend_focused_adds_dependent_qa_subtask() -> None:
    subtasks = decompose_subtasks("Add a database migration for orders", token="t2")

    assert [task.id for task in subtasks] == ["backend-t2", "qa-backend-t2"]
    assert subtasks[0].description == "Add a database migration for orders"
    assert subtasks[1].dependencies == ["backend-t2"]
    assert subtasks[1].priority == 2


def test_frontend_focused_adds_dependent_qa_subtask() -> None:
    subtasks = decompose_subtasks("Redesign the settings page layout", token="t3")

    assert [task.id for task in subtasks] == ["frontend-t3", "qa-frontend-t3"]
    assert [task.role for task in subtasks] == ["frontend", "qa"]


def test_infrastructure_and_general_are_single_general_subtasks() -> None:
    infra = decompose_subtasks("Set up docker deployment pipeline", token="t4")
    general = decompose_subtasks("Refactor the logging helpers", token="t4")

    assert [(task.id, task.role) for task in infra] == [("infra-t4", "general")]
    assert infra[0].context is not None
    assert infra[0].context.role_focus == "You are a DevOps/Infrastructure specialist"
    assert [(task.id, task.role) for task in general] == [("general-t4", "general")]


def test_subtask_ids_share_one_generated_token() -> None:
    subtasks = decompose_subtasks("add user login with API and UI")
    suffixes = {task.id.rsplit("-", 1)[1] for task in subtasks}

    assert len(suffixes) == 1
    assert len(decompose_subtasks("add login API and UI")[0].id) == len(subtasks[0].id)


def test_task_decomposer_applies_project_context() -> None:
    decomposer = TaskDecomposer({"type": "rails", "name": "shop"})

    execution_plan = decomposer.decompose("Add a database migration for orders")
    backend = execution_plan.phases[0].subtasks[0]

    assert backend.context is not None
    assert backend.context.role_focus == "You are a Backend Developer specializing in rails"

    overridden = decomposer.decompose(
        "Add a database migration for orders", {"type": "django"}
    ).phases[0].subtasks[0]
    assert overridden.context is not None
    assert "django" in overridden.context.role_focus
