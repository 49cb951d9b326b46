"""Records reloaded from JSON keep behaving like the originals."""

import pytest

from caseflow.config import CaseflowConfig
from caseflow.contracts import definition_adapter
from caseflow.engine import InstanceEngine
from caseflow.models import CaseStageProgress, ProcessInstance
from caseflow.persistence import InMemoryProcessRepository
from caseflow.progress import StageProgressEngine

TENANT = "tenant-a"


@pytest.mark.asyncio
async def test_instance_round_trip(repo, store, engine, process_data):
    definition = await store.create(TENANT, process_data(variables=[{"name": "fee"}]))
    instance = await engine.start(TENANT, definition.id, "client", "c-1", {"fee": 10})
    instance = await engine.advance_step(TENANT, instance.id, {"ok": True})

    restored = ProcessInstance.model_validate_json(instance.model_dump_json())
    assert restored.model_dump() == instance.model_dump()

    clone_repo = InMemoryProcessRepository()
    await clone_repo.save_definition(
        definition_adapter.validate_json(definition.model_dump_json())
    )
    await clone_repo.create_instance(restored)
    clone = InstanceEngine(clone_repo)

    original = await engine.advance_step(TENANT, instance.id, actor="x")
    replayed = await clone.advance_step(TENANT, instance.id, actor="x")
    assert replayed.status == original.status
    assert replayed.current_step_id == original.current_step_id
    assert replayed.completed_steps == original.completed_steps
    assert replayed.variables == original.variables
    assert [e.action for e in replayed.history] == [e.action for e in original.history]


@pytest.mark.asyncio
async def test_case_progress_round_trip(store, stages, case_data):
    definition = await store.create(TENANT, case_data())
    await stages.initialize_for_case(TENANT, "case-1", definition_id=definition.id)
    await stages.move_to_stage(TENANT, "case-1", "B", notes="moved")
    progress = await stages.complete_requirement(TENANT, "case-1", "B", "brief")

    restored = CaseStageProgress.model_validate_json(progress.model_dump_json())
    assert restored.model_dump() == progress.model_dump()
    assert restored.visited_stage_ids == ["A", "B"]

    clone_repo = InMemoryProcessRepository()
    await clone_repo.save_definition(
        definition_adapter.validate_json(definition.model_dump_json())
    )
    await clone_repo.create_progress(restored)
    clone = StageProgressEngine(clone_repo, config=CaseflowConfig())

    original = await stages.move_to_stage(TENANT, "case-1", "C")
    replayed = await clone.move_to_stage(TENANT, "case-1", "C")
    assert replayed.status == original.status
    assert replayed.visited_stage_ids == original.visited_stage_ids


def test_definition_round_trip(case_data):
    definition = definition_adapter.validate_python({**case_data(), "tenant_id": TENANT})
    restored = definition_adapter.validate_json(definition.model_dump_json())
    assert restored.model_dump() == definition.model_dump()
    assert restored.edges() == [("A", "B"), ("B", "C")]
