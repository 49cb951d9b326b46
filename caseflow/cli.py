"""Command line interface for inspecting caseflow definitions and records."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Coroutine, Optional, TypeVar

import typer
import yaml
from pydantic import ValidationError as PydanticValidationError

from caseflow.config import load_config
from caseflow.contracts import definition_adapter
from caseflow.definitions import DefinitionStore
from caseflow.engine import InstanceEngine
from caseflow.errors import CaseflowError
from caseflow.persistence import category_of, get_repository
from caseflow.presets import list_presets
from caseflow.progress import StageProgressEngine
from caseflow.resolver import normalize_nodes, on_definition_mutation

T = TypeVar("T")

app = typer.Typer(help="CLI for caseflow workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing definitions")
preset_app = typer.Typer(help="Commands for built-in case workflow presets")
instance_app = typer.Typer(help="Commands for inspecting process instances")
case_app = typer.Typer(help="Commands for inspecting case stage progress")

app.add_typer(definition_app, name="definition")
app.add_typer(preset_app, name="preset")
app.add_typer(instance_app, name="instance")
app.add_typer(case_app, name="case")

TenantOption = typer.Option(..., "--tenant", "-t", help="Tenant id")


@app.callback()
def main() -> None:
    """Caseflow CLI entry point."""
    config = load_config()
    logging.basicConfig(level=getattr(logging, config.log_level))


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except CaseflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


@definition_app.command("list")
def definition_list(
    tenant: str = TenantOption,
    kind: Optional[str] = typer.Option(None, help="'process' or 'case'"),
    category: Optional[str] = None,
) -> None:
    """
    List a tenant's definitions.

    Example:
        caseflow definition list --tenant acme --kind case
        # Output: 3f2a...    case    labor    v2    active    Labor Case Workflow
    """
    store = DefinitionStore(get_repository())
    definitions = _run(store.list(tenant, kind=kind, category=category))
    if not definitions:
        typer.echo("No definitions found")
        return
    for definition in definitions:
        state = "active" if definition.is_active else "inactive"
        typer.echo(
            f"{definition.id}\t{definition.kind}\t{category_of(definition)}\t"
            f"v{definition.version}\t{state}\t{definition.name}"
        )


@definition_app.command("show")
def definition_show(definition_id: str, tenant: str = TenantOption) -> None:
    """Show a definition's steps or stages in order."""
    store = DefinitionStore(get_repository())
    definition = _run(store.get(tenant, definition_id))
    typer.echo(
        f"Definition {definition.id}: {definition.name} "
        f"({definition.kind}, v{definition.version}, "
        f"{definition.transition_mode.value})"
    )
    for node in definition.ordered_nodes():
        flags = [flag for flag, on in (("initial", node.is_initial), ("final", node.is_final)) if on]
        line = f"- [{node.order}] {node.id}: {node.name}"
        if flags:
            line += f" ({', '.join(flags)})"
        if node.dependencies:
            line += f" after {', '.join(node.dependencies)}"
        typer.echo(line)
    for source, target in definition.edges():
        typer.echo(f"  {source} -> {target}")


@definition_app.command("validate")
def definition_validate(path: Path) -> None:
    """
    Validate a YAML definition file without saving it.

    The file holds a single definition with a ``kind`` of ``process`` or
    ``case``. Order indices and the initial flag are filled in the same way
    the store does before the dependency checks run.

    Example:
        caseflow definition validate ./onboarding.yaml
        # Output: onboarding.yaml: valid (process, 4 steps)
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    data.setdefault("tenant_id", "local")
    try:
        definition = definition_adapter.validate_python(data)
        definition = definition.with_nodes(normalize_nodes(definition.nodes))
        on_definition_mutation(definition, max_nodes=load_config().engine.max_nodes)
    except (PydanticValidationError, CaseflowError) as exc:
        typer.secho(f"{path.name}: invalid", fg=typer.colors.RED)
        typer.echo(str(exc))
        raise typer.Exit(code=1)
    typer.echo(
        f"{path.name}: valid ({definition.kind}, "
        f"{len(definition.nodes)} {definition.nodes_field})"
    )


@preset_app.command("list")
def preset_list() -> None:
    """List the built-in case workflow presets."""
    for preset in list_presets():
        typer.echo(
            f"{preset.id}\t{preset.case_category}\t{len(preset.stages)} stages\t"
            f"{preset.name}"
        )


@preset_app.command("import")
def preset_import(
    preset_id: str,
    tenant: str = TenantOption,
    actor: Optional[str] = typer.Option(None, help="User recorded as creator"),
) -> None:
    """Copy a preset into the tenant's case workflows."""
    store = DefinitionStore(get_repository())
    definition = _run(store.import_preset(tenant, preset_id, actor))
    typer.echo(f"Imported preset {preset_id} as {definition.id}")


@instance_app.command("list")
def instance_list(
    tenant: str = TenantOption,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> None:
    """List process instances, most recently started first."""
    repo = get_repository()
    instances = _run(
        repo.list_instances(tenant, entity_type=entity_type, entity_id=entity_id)
    )
    if not instances:
        typer.echo("No instances found")
        return
    for instance in instances:
        typer.echo(
            f"{instance.id}\t{instance.status.value}\t"
            f"{instance.entity.type}:{instance.entity.id}\t{instance.name}"
        )


@instance_app.command("show")
def instance_show(instance_id: str, tenant: str = TenantOption) -> None:
    """Show an instance's position, progress and history."""
    engine = InstanceEngine(get_repository())
    view = _run(engine.status(tenant, instance_id))
    instance = view.instance
    typer.echo(f"Instance {instance.id}: {instance.status.value}")
    typer.echo(f"Current step: {instance.current_step_id}")
    typer.echo(
        f"Progress: {view.progress.completed_steps}/{view.progress.total_steps} "
        f"({view.progress.percentage}%)"
    )
    if instance.variables:
        typer.echo(f"Variables: {instance.variables}")
    for entry in instance.history:
        typer.echo(f"- {entry.timestamp.isoformat()} {entry.action} by {entry.actor or '-'}")


@case_app.command("show")
def case_show(case_id: str, tenant: str = TenantOption) -> None:
    """Show a case's current stage and requirement status."""
    engine = StageProgressEngine(get_repository())
    progress = _run(engine.get_progress(tenant, case_id))
    typer.echo(
        f"Case {progress.case_id}: {progress.status.value} "
        f"at {progress.current_stage_id} ({progress.current_stage_name})"
    )
    for stage in progress.snapshot.ordered_nodes():
        marker = "*" if stage.id == progress.current_stage_id else " "
        typer.echo(f"{marker} {stage.id}: {stage.name}")
        for status in progress.requirement_status(stage.id):
            check = "x" if status.completed else " "
            typer.echo(f"    [{check}] {status.name}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
