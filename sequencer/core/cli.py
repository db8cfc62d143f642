"""Command-line interface for the outreach sequencer."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import click
import structlog

from sequencer.core.config import DEFAULT_CONFIG_PATH, load_sequence_file, load_settings
from sequencer.core.db import (
    DEFAULT_DB_PATH,
    get_enrollment,
    get_enrollment_stats,
    get_step_logs,
    init_db,
    insert_sequence,
    set_user_crm_domain,
)
from sequencer.outreach import lifecycle
from sequencer.outreach.enrollment import enroll_contact
from sequencer.outreach.errors import OutreachError
from sequencer.outreach.executor import build_collaborators, execute_step
from sequencer.outreach.models import Step
from sequencer.outreach.scheduler import get_due_steps, run_due_cycle

# Configure structlog for CLI output
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer()
    ]
)

log = structlog.get_logger()


def db_option(f):
    return click.option("--db", "db_path", type=click.Path(), default=str(DEFAULT_DB_PATH),
                        help="Database path")(f)


def config_option(f):
    return click.option("--config", "config_path", type=click.Path(), default=str(DEFAULT_CONFIG_PATH),
                        help="Config directory path")(f)


def user_option(f):
    return click.option("--user", "user", envvar="OUTREACH_USER", default=None,
                        help="Acting user (defaults to $OUTREACH_USER)")(f)


def echo_enrollment(enrollment) -> None:
    click.echo(f"\nEnrollment: {enrollment.id}")
    click.echo(f"  Contact: {enrollment.contact_id} @ {enrollment.company_domain}")
    click.echo(f"  Status: {enrollment.status}")
    click.echo(f"  Current step: {enrollment.current_step}")
    if enrollment.next_step_due_at:
        click.echo(f"  Next step due: {enrollment.next_step_due_at}")


@click.group()
def cli():
    """Outreach Sequencer - multi-channel sequence enrollment engine."""


@cli.command()
@db_option
def init(db_path: str):
    """Create the database schema."""
    init_db(Path(db_path))
    click.echo(f"Database ready at {db_path}")


@cli.command("add-sequence")
@click.argument("sequence_file", type=click.Path(exists=True))
@db_option
@user_option
def add_sequence(sequence_file: str, db_path: str, user: Optional[str]):
    """Load a sequence definition from a YAML file."""
    db = Path(db_path)
    init_db(db)

    try:
        definition = load_sequence_file(Path(sequence_file))
    except ValueError as e:
        raise click.ClickException(f"Invalid sequence file: {e}")
    steps = [Step(**s.model_dump()) for s in definition.steps]
    sequence_id = insert_sequence(db, definition.name, steps, definition.description, created_by=user)

    click.echo(f"Sequence '{definition.name}' added with {len(steps)} steps: {sequence_id}")


@cli.command("set-crm-domain")
@click.argument("domain")
@db_option
@user_option
def set_crm_domain(domain: str, db_path: str, user: Optional[str]):
    """Set the Freshsales subdomain used for call deep links."""
    if not user:
        raise click.ClickException("Not authenticated: pass --user or set OUTREACH_USER")
    db = Path(db_path)
    init_db(db)
    set_user_crm_domain(db, user, domain)
    click.echo(f"Freshsales domain for {user}: {domain}")


@cli.command()
@click.option("--sequence", "sequence_id", required=True, help="Sequence ID")
@click.option("--contact", "contact_id", required=True, help="Contact ID")
@click.option("--domain", "company_domain", required=True, help="Company domain")
@db_option
@user_option
def enroll(sequence_id: str, contact_id: str, company_domain: str, db_path: str, user: Optional[str]):
    """Enroll a contact into a sequence."""
    db = Path(db_path)
    init_db(db)
    try:
        enrollment = enroll_contact(db, user, sequence_id, contact_id, company_domain)
    except OutreachError as e:
        raise click.ClickException(e.message)
    echo_enrollment(enrollment)


@cli.command()
@click.option("--enrollment", "enrollment_id", default=None, help="Show one enrollment")
@db_option
def status(enrollment_id: Optional[str], db_path: str):
    """Show pipeline status."""
    db = Path(db_path)
    init_db(db)

    if enrollment_id:
        enrollment = get_enrollment(db, enrollment_id)
        if not enrollment:
            click.echo(f"Enrollment not found: {enrollment_id}")
            return

        echo_enrollment(enrollment)
        for step_log in get_step_logs(db, enrollment_id):
            marker = "✓" if step_log.status == "completed" else "·"
            click.echo(f"  {marker} step {step_log.step_index} [{step_log.channel}] {step_log.status}")
        return

    stats = get_enrollment_stats(db)

    click.echo("\nPipeline Status")
    click.echo("───────────────")
    click.echo(f"Active enrollments:    {stats.get('active', 0)}")
    click.echo(f"  - Due now:           {stats.get('due_now', 0)}")
    click.echo(f"Paused:                {stats.get('paused', 0)}")
    click.echo(f"Completed:             {stats.get('completed', 0)}")
    click.echo(f"Unenrolled:            {stats.get('unenrolled', 0)}")


@cli.command()
@db_option
@config_option
def due(db_path: str, config_path: str):
    """List enrollments whose next step is due."""
    db = Path(db_path)
    init_db(db)
    settings = load_settings(Path(config_path))

    items = get_due_steps(db, limit=settings.due_steps.limit)
    if not items:
        click.echo("No steps due")
        return

    for item in items:
        step = item.sequence.steps[item.enrollment.current_step]
        click.echo(
            f"{item.enrollment.id}  {item.contact_name} @ {item.company_name}  "
            f"{item.sequence.name} step {item.enrollment.current_step + 1}/{len(item.sequence.steps)} "
            f"[{step.channel}] due {item.enrollment.next_step_due_at}"
        )


@cli.command()
@click.argument("enrollment_id")
@click.option("--outcome", default=None, help="Outcome to record on the step")
@click.option("--notes", default=None, help="Notes to record on the step")
@click.option("--draft", "draft_content", default=None, help="Use this text instead of a generated draft")
@db_option
@config_option
@user_option
def execute(enrollment_id: str, outcome: Optional[str], notes: Optional[str], draft_content: Optional[str],
            db_path: str, config_path: str, user: Optional[str]):
    """Execute the current step of an enrollment."""
    db = Path(db_path)
    init_db(db)
    settings = load_settings(Path(config_path))
    collaborators = build_collaborators(db, settings)

    # CRM sync jobs finish after the result is shown
    try:
        try:
            result = asyncio.run(execute_step(
                db, enrollment_id, user, collaborators,
                outcome=outcome, notes=notes, draft_content=draft_content,
            ))
        except OutreachError as e:
            raise click.ClickException(e.message)

        click.echo(json.dumps(result.execution_result, indent=2))
        echo_enrollment(result.enrollment)
        if result.completed:
            click.echo("\nSequence completed.")
    finally:
        collaborators.crm_sync.shutdown(wait_for_jobs=True)


def _transition(action: str, enrollment_id: str, db_path: str, user: Optional[str],
                outcome: Optional[str] = None, notes: Optional[str] = None) -> None:
    db = Path(db_path)
    init_db(db)
    try:
        result = lifecycle.transition(db, enrollment_id, user, action, outcome=outcome, notes=notes)
    except OutreachError as e:
        raise click.ClickException(e.message)

    echo_enrollment(result.enrollment)
    if result.completed:
        click.echo("\nSequence completed.")


@cli.command()
@click.argument("enrollment_id")
@db_option
@user_option
def pause(enrollment_id: str, db_path: str, user: Optional[str]):
    """Pause an active enrollment."""
    _transition("pause", enrollment_id, db_path, user)


@cli.command()
@click.argument("enrollment_id")
@db_option
@user_option
def resume(enrollment_id: str, db_path: str, user: Optional[str]):
    """Resume a paused enrollment."""
    _transition("resume", enrollment_id, db_path, user)


@cli.command()
@click.argument("enrollment_id")
@db_option
@user_option
def unenroll(enrollment_id: str, db_path: str, user: Optional[str]):
    """Remove a contact from its sequence."""
    _transition("unenroll", enrollment_id, db_path, user)


@cli.command()
@click.argument("enrollment_id")
@click.option("--outcome", default=None, help="Outcome to record on the step")
@click.option("--notes", default=None, help="Notes to record on the step")
@db_option
@user_option
def advance(enrollment_id: str, outcome: Optional[str], notes: Optional[str], db_path: str, user: Optional[str]):
    """Mark the current step done without executing it."""
    _transition("advance", enrollment_id, db_path, user, outcome=outcome, notes=notes)


@cli.command()
@db_option
@config_option
@user_option
def run(db_path: str, config_path: str, user: Optional[str]):
    """Execute every step that is due now."""
    if not user:
        raise click.ClickException("Not authenticated: pass --user or set OUTREACH_USER")

    db = Path(db_path)
    init_db(db)
    settings = load_settings(Path(config_path))
    collaborators = build_collaborators(db, settings)

    try:
        result = asyncio.run(run_due_cycle(db, user, collaborators, limit=settings.due_steps.limit))

        click.echo("=" * 40)
        click.echo("SUMMARY")
        click.echo("=" * 40)
        click.echo(f"Steps due:        {result['due']}")
        click.echo(f"Steps executed:   {len(result['executed'])}")
        click.echo(f"Sequences done:   {len(result['completed'])}")
        if result["failed"]:
            click.echo(f"\n⚠️  Failed: {', '.join(result['failed'])}")
    finally:
        collaborators.crm_sync.shutdown(wait_for_jobs=True)


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Port")
@db_option
@config_option
def serve(host: str, port: int, db_path: str, config_path: str):
    """Serve the HTTP API."""
    import uvicorn

    from sequencer.api import create_app

    app = create_app(Path(db_path), load_settings(Path(config_path)))
    uvicorn.run(app, host=host, port=port)


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
