"""Command line interface for managing workflows and running the scheduler."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

import typer
import yaml

from crmflow.config import load_config
from crmflow.contracts import EnrollmentStepResult
from crmflow.errors import CrmflowError
from crmflow.graph import parse_steps
from crmflow.scheduler import Scheduler
from crmflow.service import WorkflowService, build_service
from crmflow.templates import list_templates
from crmflow.transports import get_transport
from crmflow.worker import EnrollmentWorker

T = TypeVar("T")

app = typer.Typer(help="CLI for crmflow workflow automation")

workflow_app = typer.Typer(help="Commands for managing workflows")
template_app = typer.Typer(help="Commands for built-in workflow templates")
enrollment_app = typer.Typer(help="Commands for inspecting enrollments")
scheduler_app = typer.Typer(help="Commands for processing due enrollments")

app.add_typer(workflow_app, name="workflow")
app.add_typer(template_app, name="template")
app.add_typer(enrollment_app, name="enrollment")
app.add_typer(scheduler_app, name="scheduler")

DEFAULT_WORKSPACE = "default"

_state: Dict[str, Any] = {"config_path": None}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, help="Path to a crmflow YAML config"),
) -> None:
    """crmflow CLI entry point."""
    ctx_config = load_config(str(config) if config else None)
    logging.basicConfig(
        level=getattr(logging, ctx_config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config_path"] = str(config) if config else None


def _service(entities: Optional[Path] = None) -> WorkflowService:
    config = load_config(_state["config_path"])
    if entities is not None:
        config.entities_path = str(entities)
    return build_service(config)


def _run(coro: Awaitable[T]) -> T:
    try:
        return asyncio.run(coro)
    except CrmflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_result(result: EnrollmentStepResult) -> None:
    enrollment = result.enrollment
    typer.echo(f"{enrollment.id}\t{result.outcome}\t{enrollment.status}")


# ----------------------------------------------------------------------
# workflow


@workflow_app.command("list")
def workflow_list(
    workspace: str = typer.Option(DEFAULT_WORKSPACE, help="Workspace to list"),
    status: Optional[str] = typer.Option(None, help="Only workflows with this status"),
) -> None:
    """
    List workflows of a workspace with their status and enrollment counts.

    Archived workflows are hidden unless ``--status archived`` is given.

    Example:
        crmflow workflow list --workspace acme
        # Output: 7f3c...    active    Welcome New Contacts    enrolled=12
    """
    service = _service()
    workflows = _run(service.list_workflows(workspace_id=workspace, status=status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.status}\t{wf.name}\tenrolled={wf.stats.total_enrolled}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow's settings and its steps in order."""
    service = _service()
    wf = _run(service.get_workflow(workflow_id))
    typer.echo(f"Workflow {wf.id}: {wf.name} [{wf.status}] v{wf.version}")
    typer.echo(f"Trigger: {wf.trigger_type.value if wf.trigger_type else '(none)'} on {wf.trigger_entity_type}")
    for step in wf.steps:
        targets = ", ".join(t or "-" for t in step.next_step_ids) or "(end)"
        typer.echo(f"- {step.id} {step.type}: {step.name} -> {targets}")


@workflow_app.command("validate")
def workflow_validate(workflow_id: str) -> None:
    """Validate a stored workflow graph; exits 1 when it has errors."""
    service = _service()
    errors = _run(service.validate_workflow(workflow_id))
    if not errors:
        typer.echo("Workflow is valid")
        return
    for error in errors:
        color = typer.colors.RED if error.fatal else typer.colors.YELLOW
        where = f" ({error.step_id})" if error.step_id else ""
        typer.secho(f"{error.severity}: {error.code}{where}: {error.message}", fg=color)
    if any(e.fatal for e in errors):
        raise typer.Exit(code=1)


@workflow_app.command("import")
def workflow_import(
    path: Path,
    workspace: str = typer.Option(DEFAULT_WORKSPACE, help="Workspace to create it in"),
) -> None:
    """
    Create a draft workflow from a YAML or JSON definition file.

    The file holds ``name``, optional ``description``, ``trigger_entity_type``,
    ``allow_reenrollment`` and a ``steps`` list.

    Example:
        crmflow workflow import ./welcome.yaml --workspace acme
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    steps = parse_steps(data.get("steps", [])) if "steps" in data else None
    service = _service()
    wf = _run(
        service.create_workflow(
            workspace,
            name=data.get("name"),
            description=data.get("description", ""),
            trigger_entity_type=data.get("trigger_entity_type"),
            steps=steps,
            allow_reenrollment=data.get("allow_reenrollment", False),
        )
    )
    typer.echo(f"Created workflow {wf.id}")


@workflow_app.command("activate")
def workflow_activate(workflow_id: str) -> None:
    service = _service()
    wf = _run(service.activate(workflow_id))
    typer.echo(f"Workflow {wf.id}: {wf.status}")


@workflow_app.command("pause")
def workflow_pause(workflow_id: str) -> None:
    service = _service()
    wf = _run(service.pause(workflow_id))
    typer.echo(f"Workflow {wf.id}: {wf.status}")


@workflow_app.command("resume")
def workflow_resume(workflow_id: str) -> None:
    service = _service()
    wf = _run(service.resume(workflow_id))
    typer.echo(f"Workflow {wf.id}: {wf.status}")


@workflow_app.command("enroll")
def workflow_enroll(
    workflow_id: str,
    entity_ids: List[str],
    entity_type: str = typer.Option("contact", help="Type of the entities"),
    entities: Optional[Path] = typer.Option(None, help="YAML/JSON file with entity records"),
) -> None:
    """Enroll one or more entities into an active workflow."""
    service = _service(entities)
    result = _run(service.enroll_bulk(workflow_id, entity_type, entity_ids))
    typer.echo(f"Enrolled {result.enrolled}, skipped {result.skipped}, failed {result.failed}")
    for error in result.errors:
        typer.secho(error, fg=typer.colors.RED)


@workflow_app.command("test")
def workflow_test(
    workflow_id: str,
    entity_id: str,
    live: bool = typer.Option(False, help="Run real actions instead of simulating them"),
    fast_forward: bool = typer.Option(True, help="Skip delays"),
    entities: Optional[Path] = typer.Option(None, help="YAML/JSON file with entity records"),
) -> None:
    """
    Run a workflow once against an entity and print the step trace.

    Example:
        crmflow workflow test 7f3c... contact-1 --entities ./contacts.yaml
        # Output: completed  trigger  Contact created  Triggered by contact_created
        #         completed  action   Send welcome email  Would send email ...
    """
    service = _service(entities)
    result = _run(
        service.test_workflow(
            workflow_id, entity_id, dry_run=not live, fast_forward=fast_forward
        )
    )
    for trace in result.steps:
        message = trace.error or trace.message
        typer.echo(f"{trace.status}\t{trace.step_type}\t{trace.step_name}\t{message}")
    typer.echo(f"Final status: {result.final_status}")
    if not result.success:
        raise typer.Exit(code=1)


@workflow_app.command("funnel")
def workflow_funnel(workflow_id: str) -> None:
    """Print entered/completed/failed/dropoff counts per step."""
    service = _service()
    steps = _run(service.funnel(workflow_id))
    typer.echo("step\tentered\tcompleted\tfailed\tdropoff")
    for step in steps:
        typer.echo(
            f"{step.step_name or step.step_id}\t{step.entered}\t{step.completed}\t{step.failed}\t{step.dropoff}"
        )


# ----------------------------------------------------------------------
# template


@template_app.command("list")
def template_list() -> None:
    """List the built-in templates."""
    for template in list_templates():
        typer.echo(f"{template.id}\t{template.category}\t{template.name}")


@template_app.command("use")
def template_use(
    template_id: str,
    workspace: str = typer.Option(DEFAULT_WORKSPACE, help="Workspace to create it in"),
    name: Optional[str] = typer.Option(None, help="Name of the new workflow"),
) -> None:
    """Create a draft workflow from a built-in template."""
    service = _service()
    wf = _run(service.create_workflow(workspace, name=name, template_id=template_id))
    typer.echo(f"Created workflow {wf.id} from {template_id}")


# ----------------------------------------------------------------------
# enrollment


@enrollment_app.command("list")
def enrollment_list(
    workflow_id: str,
    status: Optional[str] = typer.Option(None, help="Only enrollments with this status"),
    limit: int = typer.Option(50, help="Page size"),
    offset: int = typer.Option(0, help="Page offset"),
) -> None:
    """List enrollments of a workflow."""
    service = _service()
    page = _run(service.list_enrollments(workflow_id, status=status, limit=limit, offset=offset))
    if not page.items:
        typer.echo("No enrollments found")
        return
    for enrollment in page.items:
        typer.echo(
            f"{enrollment.id}\t{enrollment.entity_type}:{enrollment.entity_id}\t"
            f"{enrollment.status}\t{enrollment.current_step_id or '-'}"
        )
    typer.echo(f"{len(page.items)} of {page.total}")


@enrollment_app.command("show")
def enrollment_show(enrollment_id: str) -> None:
    """Show an enrollment and its execution history."""
    service = _service()
    enrollment = _run(service.get_enrollment(enrollment_id))
    typer.echo(f"Enrollment {enrollment.id}: {enrollment.status}")
    if enrollment.last_error:
        typer.echo(f"Last error: {enrollment.last_error}")
    for entry in enrollment.steps_executed:
        detail = entry.error or json.dumps(entry.result, default=str)
        typer.echo(f"- {entry.step_name or entry.step_id}: {entry.status} {detail}")


@enrollment_app.command("retry")
def enrollment_retry(enrollment_id: str) -> None:
    """Resume a failed enrollment at the step that failed."""
    service = _service()
    enrollment = _run(service.retry_enrollment(enrollment_id))
    typer.echo(f"Enrollment {enrollment.id}: {enrollment.status} at {enrollment.current_step_id}")


# ----------------------------------------------------------------------
# scheduler


@scheduler_app.command("status")
def scheduler_status() -> None:
    service = _service()
    status = _run(Scheduler(service).status())
    typer.echo(f"Pending: {status.pending}")


@scheduler_app.command("process")
def scheduler_process(
    entities: Optional[Path] = typer.Option(None, help="YAML/JSON file with entity records"),
) -> None:
    """Advance every due enrollment once and exit."""
    config = load_config(_state["config_path"])
    service = _service(entities)
    processed = _run(Scheduler(service, config.scheduler).process_due())
    typer.echo(f"Processed {processed} enrollments")


@scheduler_app.command("run")
def scheduler_run(
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
    dispatch: bool = typer.Option(False, help="Publish due enrollments for workers"),
    entities: Optional[Path] = typer.Option(None, help="YAML/JSON file with entity records"),
) -> None:
    """
    Poll for due enrollments until stopped.

    With ``--dispatch`` due enrollments are published on the configured
    transport for ``crmflow scheduler worker`` processes instead of being
    advanced in this process.
    """
    config = load_config(_state["config_path"])
    service = _service(entities)
    transport = get_transport(config=config) if dispatch else None
    scheduler = Scheduler(service, config.scheduler, transport=transport)
    typer.echo("Starting scheduler")
    _run(scheduler.run(lifespan=lifespan))


@scheduler_app.command("worker")
def scheduler_worker(
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
    entities: Optional[Path] = typer.Option(None, help="YAML/JSON file with entity records"),
) -> None:
    """Advance enrollments published by a dispatching scheduler."""
    config = load_config(_state["config_path"])
    service = _service(entities)
    worker = EnrollmentWorker(get_transport(config=config), service)
    typer.echo("Starting worker")
    _run(worker.start(lifespan=lifespan))
    for result in worker.processed:
        _echo_result(result)
    typer.echo(f"Processed {worker.processed_total} dispatches")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    from crmflow.api import create_app

    uvicorn.run(create_app(_service()), host=host, port=port)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
