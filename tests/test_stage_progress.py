import pytest

from caseflow.config import CaseflowConfig, EngineConfig
from caseflow.entities import RegistryEntityResolver
from caseflow.errors import (
    ConflictError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from caseflow.history import RequirementCompletedEntry, StageMovedEntry
from caseflow.models import ProgressStatus
from caseflow.progress import StageProgressEngine

TENANT = "tenant-a"


def _d1(case_data):
    """A(initial) -> B(deps A) -> C(final, deps B) with explicit transitions."""
    return case_data(
        stages=[
            {"id": "A", "name": "Filed", "is_initial": True},
            {"id": "B", "name": "Hearing", "dependencies": ["A"]},
            {"id": "C", "name": "Judgment", "is_final": True, "dependencies": ["B"]},
        ]
    )


@pytest.mark.asyncio
async def test_scenario_d1(store, stages, case_data):
    definition = await store.create(TENANT, _d1(case_data))

    progress = await stages.initialize_for_case(
        TENANT, "case-1", definition_id=definition.id, actor="alice"
    )
    assert progress.current_stage_id == "A"
    assert progress.current_stage_name == "Filed"
    assert progress.status == ProgressStatus.ACTIVE

    with pytest.raises(InvalidTransitionError):
        await stages.move_to_stage(TENANT, "case-1", "C")

    progress = await stages.move_to_stage(TENANT, "case-1", "B", actor="alice")
    assert progress.current_stage_id == "B"

    progress = await stages.move_to_stage(TENANT, "case-1", "C", actor="alice")
    assert progress.current_stage_id == "C"
    assert progress.status == ProgressStatus.COMPLETED
    assert progress.completed_at is not None
    assert progress.visited_stage_ids == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_move_appends_one_history_entry(store, stages, case_data):
    definition = await store.create(TENANT, _d1(case_data))
    before = await stages.initialize_for_case(
        TENANT, "case-1", definition_id=definition.id
    )

    after = await stages.move_to_stage(
        TENANT, "case-1", "B", actor="bob", notes="hearing scheduled"
    )
    assert len(after.history) == len(before.history) + 1
    entry = after.history[-1]
    assert isinstance(entry, StageMovedEntry)
    assert (entry.from_stage, entry.to_stage) == ("A", "B")
    assert entry.actor == "bob"
    assert entry.notes == "hearing scheduled"
    assert after.version == before.version + 1


@pytest.mark.asyncio
async def test_required_requirements_gate_dependent_stages(store, stages, case_data):
    definition = await store.create(TENANT, case_data())
    await stages.initialize_for_case(TENANT, "case-1", definition_id=definition.id)
    await stages.move_to_stage(TENANT, "case-1", "B")

    with pytest.raises(InvalidTransitionError, match="B"):
        await stages.move_to_stage(TENANT, "case-1", "C")

    # optional requirements do not gate
    await stages.complete_requirement(TENANT, "case-1", "B", "memo")
    with pytest.raises(InvalidTransitionError):
        await stages.move_to_stage(TENANT, "case-1", "C")

    await stages.complete_requirement(TENANT, "case-1", "B", "brief")
    progress = await stages.move_to_stage(TENANT, "case-1", "C")
    assert progress.status == ProgressStatus.COMPLETED


@pytest.mark.asyncio
async def test_move_rejections(store, stages, case_data):
    definition = await store.create(TENANT, _d1(case_data))
    await stages.initialize_for_case(TENANT, "case-1", definition_id=definition.id)

    with pytest.raises(NotFoundError):
        await stages.move_to_stage(TENANT, "case-1", "Z")
    with pytest.raises(InvalidTransitionError):
        await stages.move_to_stage(TENANT, "case-1", "A")
    with pytest.raises(NotFoundError):
        await stages.move_to_stage(TENANT, "case-2", "B")

    await stages.move_to_stage(TENANT, "case-1", "B")
    with pytest.raises(InvalidTransitionError):
        await stages.move_to_stage(TENANT, "case-1", "A")

    await stages.move_to_stage(TENANT, "case-1", "C")
    with pytest.raises(InvalidStateError):
        await stages.move_to_stage(TENANT, "case-1", "B")


@pytest.mark.asyncio
async def test_linear_mode_allows_moving_back(store, stages, case_data):
    data = case_data(
        transition_mode="linear",
        transitions=[],
        stages=[
            {"id": "intake", "name": "Intake"},
            {"id": "review", "name": "Review"},
            {"id": "trial", "name": "Trial", "dependencies": ["review"]},
            {"id": "closed", "name": "Closed", "is_final": True},
        ],
    )
    definition = await store.create(TENANT, data)
    await stages.initialize_for_case(TENANT, "case-1", definition_id=definition.id)

    with pytest.raises(InvalidTransitionError):
        await stages.move_to_stage(TENANT, "case-1", "trial")

    await stages.move_to_stage(TENANT, "case-1", "review")
    await stages.move_to_stage(TENANT, "case-1", "intake")
    progress = await stages.move_to_stage(TENANT, "case-1", "trial")
    assert progress.visited_stage_ids == ["intake", "review", "trial"]


@pytest.mark.asyncio
async def test_initialize_is_idempotent(store, stages, case_data):
    definition = await store.create(TENANT, case_data())
    first = await stages.initialize_for_case(
        TENANT, "case-1", definition_id=definition.id
    )
    again = await stages.initialize_for_case(
        TENANT, "case-1", definition_id=definition.id
    )
    assert again.id == first.id
    assert again.version == first.version
    assert len(again.history) == 1

    other = await store.create(TENANT, case_data(name="Other"))
    with pytest.raises(ConflictError):
        await stages.initialize_for_case(TENANT, "case-1", definition_id=other.id)


@pytest.mark.asyncio
async def test_initialize_uses_category_default(store, stages, case_data):
    await store.create(TENANT, case_data(name="Plain"))
    default = await store.create(TENANT, case_data(name="Default", is_default=True))

    progress = await stages.initialize_for_case(
        TENANT, "case-1", case_category="labor"
    )
    assert progress.definition_id == default.id

    with pytest.raises(NotFoundError):
        await stages.initialize_for_case(TENANT, "case-2", case_category="family")
    with pytest.raises(ValidationError):
        await stages.initialize_for_case(TENANT, "case-3")


@pytest.mark.asyncio
async def test_initialize_rejects_unusable_definitions(
    store, stages, case_data, process_data
):
    process = await store.create(TENANT, process_data())
    inactive = await store.create(TENANT, case_data(is_active=False))
    for definition_id in (process.id, inactive.id, "missing"):
        with pytest.raises(NotFoundError):
            await stages.initialize_for_case(
                TENANT, "case-1", definition_id=definition_id
            )


@pytest.mark.asyncio
async def test_initialize_requires_known_case(repo, config, store, case_data):
    engine = StageProgressEngine(
        repo, entities=RegistryEntityResolver([(TENANT, "case", "case-1")]), config=config
    )
    definition = await store.create(TENANT, case_data())

    await engine.initialize_for_case(TENANT, "case-1", definition_id=definition.id)
    with pytest.raises(NotFoundError):
        await engine.initialize_for_case(TENANT, "case-2", definition_id=definition.id)


@pytest.mark.asyncio
async def test_complete_requirement_is_idempotent(store, stages, case_data):
    definition = await store.create(TENANT, case_data())
    await stages.initialize_for_case(TENANT, "case-1", definition_id=definition.id)

    first = await stages.complete_requirement(
        TENANT, "case-1", "B", "brief", actor="alice", metadata={"doc": "d-1"}
    )
    second = await stages.complete_requirement(TENANT, "case-1", "B", "brief")

    assert first.completed_requirements == ["brief"]
    assert second.completed_requirements == ["brief"]
    assert second.version == first.version
    entries = [e for e in second.history if isinstance(e, RequirementCompletedEntry)]
    assert len(entries) == 1
    assert entries[0].metadata == {"doc": "d-1"}

    statuses = {s.requirement_id: s.completed for s in second.requirement_status("B")}
    assert statuses == {"brief": True, "memo": False}


@pytest.mark.asyncio
async def test_repeat_completions_can_be_recorded(repo, store, case_data):
    config = CaseflowConfig(engine=EngineConfig(record_repeat_completions=True))
    engine = StageProgressEngine(repo, config=config)
    definition = await store.create(TENANT, case_data())
    await engine.initialize_for_case(TENANT, "case-1", definition_id=definition.id)

    await engine.complete_requirement(TENANT, "case-1", "B", "brief")
    progress = await engine.complete_requirement(TENANT, "case-1", "B", "brief")

    assert progress.completed_requirements == ["brief"]
    entries = [e for e in progress.history if isinstance(e, RequirementCompletedEntry)]
    assert [e.repeat for e in entries] == [False, True]


@pytest.mark.asyncio
async def test_complete_requirement_unknown_ids(store, stages, case_data):
    definition = await store.create(TENANT, case_data())
    await stages.initialize_for_case(TENANT, "case-1", definition_id=definition.id)

    with pytest.raises(NotFoundError):
        await stages.complete_requirement(TENANT, "case-1", "Z", "brief")
    with pytest.raises(NotFoundError):
        await stages.complete_requirement(TENANT, "case-1", "B", "nope")
    with pytest.raises(NotFoundError):
        await stages.complete_requirement(TENANT, "case-9", "B", "brief")


@pytest.mark.asyncio
async def test_progress_survives_definition_edits(store, stages, case_data):
    definition = await store.create(TENANT, case_data())
    await stages.initialize_for_case(TENANT, "case-1", definition_id=definition.id)
    await store.update_node(TENANT, definition.id, "B", {"requirements": []})

    progress = await stages.move_to_stage(TENANT, "case-1", "B")
    with pytest.raises(InvalidTransitionError):
        await stages.move_to_stage(TENANT, "case-1", "C")
    assert progress.definition_version == 1
