import pytest

from caseflow.contracts import (
    CaseSnapshot,
    CaseWorkflowTemplate,
    ProcessSnapshot,
    ProcessTemplate,
    Stage,
    Step,
)
from caseflow.errors import ConflictError, NotFoundError
from caseflow.models import (
    CaseStageProgress,
    EntityRef,
    InstanceStatus,
    ProcessInstance,
)
from caseflow.persistence import InMemoryProcessRepository, SQLiteProcessRepository


@pytest.fixture(params=["memory", "sqlite"])
def any_repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryProcessRepository()
    return SQLiteProcessRepository(tmp_path / "cf.db")


def _process(tenant_id="t1", **kwargs):
    return ProcessTemplate(
        tenant_id=tenant_id,
        name="Invoice approval",
        category="invoice_approval",
        entity_type="invoice",
        steps=[Step(id="s1", name="Check", order=0, is_initial=True)],
        **kwargs,
    )


def _case(tenant_id="t1"):
    return CaseWorkflowTemplate(
        tenant_id=tenant_id,
        name="Labor",
        case_category="labor",
        stages=[Stage(id="A", name="Filed", order=0, is_initial=True)],
    )


def _instance(template, status=InstanceStatus.RUNNING, entity_id="inv-1"):
    return ProcessInstance(
        tenant_id=template.tenant_id,
        definition_id=template.id,
        definition_version=template.version,
        name=template.name,
        entity=EntityRef(type="invoice", id=entity_id),
        snapshot=ProcessSnapshot.from_template(template),
        status=status,
        current_step_id="s1",
    )


def _progress(template, case_id="case-1"):
    return CaseStageProgress(
        tenant_id=template.tenant_id,
        case_id=case_id,
        definition_id=template.id,
        definition_version=template.version,
        snapshot=CaseSnapshot.from_template(template),
        current_stage_id="A",
    )


@pytest.mark.asyncio
async def test_definition_crud(any_repo):
    process = _process()
    case = _case()
    await any_repo.save_definition(process)
    await any_repo.save_definition(case)

    loaded = await any_repo.get_definition(process.id)
    assert isinstance(loaded, ProcessTemplate)
    assert loaded.steps[0].id == "s1"

    assert {d.id for d in await any_repo.list_definitions("t1")} == {process.id, case.id}
    assert [d.id for d in await any_repo.list_definitions("t1", kind="case")] == [case.id]
    assert [
        d.id for d in await any_repo.list_definitions("t1", category="invoice_approval")
    ] == [process.id]
    assert await any_repo.list_definitions("other") == []

    assert await any_repo.delete_definition(process.id) is True
    assert await any_repo.get_definition(process.id) is None
    assert await any_repo.delete_definition(process.id) is False


@pytest.mark.asyncio
async def test_definition_insert_twice_conflicts(any_repo):
    process = _process()
    await any_repo.save_definition(process)
    with pytest.raises(ConflictError):
        await any_repo.save_definition(process)


@pytest.mark.asyncio
async def test_definition_version_guard(any_repo):
    process = _process()
    await any_repo.save_definition(process)

    renamed = process.model_copy(update={"name": "Renamed", "version": 2})
    await any_repo.save_definition(renamed, expected_version=1)

    stale = process.model_copy(update={"name": "Stale", "version": 2})
    with pytest.raises(ConflictError):
        await any_repo.save_definition(stale, expected_version=1)
    assert (await any_repo.get_definition(process.id)).name == "Renamed"

    with pytest.raises(NotFoundError):
        await any_repo.save_definition(_process(), expected_version=1)


@pytest.mark.asyncio
async def test_instance_guards_on_version_and_status(any_repo):
    template = _process()
    await any_repo.save_definition(template)
    instance = _instance(template)
    await any_repo.create_instance(instance)

    paused = instance.model_copy(update={"status": InstanceStatus.PAUSED, "version": 2})
    await any_repo.replace_instance(
        paused, expected_version=1, expected_status=InstanceStatus.RUNNING
    )

    racing = instance.model_copy(
        update={"status": InstanceStatus.CANCELLED, "version": 2}
    )
    with pytest.raises(ConflictError):
        await any_repo.replace_instance(
            racing, expected_version=1, expected_status=InstanceStatus.RUNNING
        )
    with pytest.raises(ConflictError):
        await any_repo.replace_instance(
            racing, expected_version=2, expected_status=InstanceStatus.RUNNING
        )

    stored = await any_repo.get_instance(instance.id)
    assert stored.status == InstanceStatus.PAUSED
    assert stored.version == 2
    assert await any_repo.count_definition_references(template.id) == 1


@pytest.mark.asyncio
async def test_list_instances_filters(any_repo):
    template = _process()
    await any_repo.save_definition(template)
    running = _instance(template, entity_id="inv-1")
    done = _instance(template, status=InstanceStatus.COMPLETED, entity_id="inv-1")
    other = _instance(template, entity_id="inv-2")
    for instance in (running, done, other):
        await any_repo.create_instance(instance)

    for_entity = await any_repo.list_instances(
        "t1", entity_type="invoice", entity_id="inv-1"
    )
    assert {i.id for i in for_entity} == {running.id, done.id}

    active = await any_repo.list_instances(
        "t1", entity_id="inv-1", statuses=[InstanceStatus.RUNNING]
    )
    assert [i.id for i in active] == [running.id]
    assert await any_repo.list_instances("t2") == []


@pytest.mark.asyncio
async def test_progress_is_unique_per_case(any_repo):
    template = _case()
    await any_repo.save_definition(template)
    progress = _progress(template)
    await any_repo.create_progress(progress)

    with pytest.raises(ConflictError):
        await any_repo.create_progress(_progress(template))

    moved = progress.model_copy(update={"current_stage_name": "Filed", "version": 2})
    await any_repo.replace_progress(moved, expected_version=1)
    with pytest.raises(ConflictError):
        await any_repo.replace_progress(moved, expected_version=1)

    stored = await any_repo.get_progress("t1", "case-1")
    assert stored.version == 2
    assert await any_repo.get_progress("t2", "case-1") is None
    assert [p.case_id for p in await any_repo.list_progress("t1")] == ["case-1"]
    assert await any_repo.list_progress("t1", definition_id="other") == []
    assert await any_repo.count_definition_references(template.id) == 1


@pytest.mark.asyncio
async def test_conditional_delete_respects_references(any_repo):
    used = _process()
    case = _case()
    unused = _process()
    for template in (used, case, unused):
        await any_repo.save_definition(template)
    await any_repo.create_instance(_instance(used))
    await any_repo.create_progress(_progress(case))

    for template in (used, case):
        with pytest.raises(ConflictError):
            await any_repo.delete_definition_if_unreferenced(template.id)
        assert await any_repo.get_definition(template.id) is not None

    assert await any_repo.delete_definition_if_unreferenced(unused.id) is True
    assert await any_repo.get_definition(unused.id) is None
    assert await any_repo.delete_definition_if_unreferenced(unused.id) is False


@pytest.mark.asyncio
async def test_records_require_a_stored_definition(any_repo):
    with pytest.raises(NotFoundError):
        await any_repo.create_instance(_instance(_process()))
    with pytest.raises(NotFoundError):
        await any_repo.create_progress(_progress(_case()))
    assert await any_repo.list_instances("t1") == []
    assert await any_repo.list_progress("t1") == []


@pytest.mark.asyncio
async def test_returned_records_are_copies():
    repo = InMemoryProcessRepository()
    template = _process()
    await repo.save_definition(template)

    loaded = await repo.get_definition(template.id)
    loaded.steps.append(Step(id="s2", name="Extra", order=1))
    assert len((await repo.get_definition(template.id)).steps) == 1


@pytest.mark.asyncio
async def test_sqlite_persists_across_connections(tmp_path):
    db_path = tmp_path / "cf.db"
    template = _process()
    await SQLiteProcessRepository(db_path).save_definition(template)

    reopened = SQLiteProcessRepository(db_path)
    loaded = await reopened.get_definition(template.id)
    assert loaded is not None
    assert loaded.model_dump() == template.model_dump()
