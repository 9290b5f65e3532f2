"""CLI entrypoint for driftwatch."""

import functools
import json
import logging
import sys
import time

import click
from rich.console import Console
from rich.logging import RichHandler

from driftwatch.accounts import AccountService
from driftwatch.aws.credentials import CredentialBroker
from driftwatch.config import ENV_PREFIX, Settings
from driftwatch.errors import DriftwatchError, ErrorKind
from driftwatch.formatter import (
    format_accounts_table,
    format_drift_json,
    format_drift_tree,
    format_jobs_table,
    format_markdown,
    format_stacks_json,
    format_stacks_table,
    job_to_dict,
)
from driftwatch.integrations.slack import SlackNotifier
from driftwatch.orchestrator import DriftOrchestrator
from driftwatch.scheduler import DriftPoller
from driftwatch.store.job_store import JobStore

EXIT_CODES = {
    ErrorKind.PERMANENT: 2,
    ErrorKind.TRANSIENT: 3,
    ErrorKind.INCONSISTENT: 4,
}

owner_option = click.option(
    "--owner",
    envvar=f"{ENV_PREFIX}_OWNER",
    required=True,
    help="Owner id the accounts belong to.",
)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    if not verbose:
        logging.getLogger("botocore").setLevel(logging.WARNING)
        logging.getLogger("apscheduler").setLevel(logging.WARNING)


def handle_errors(func):
    """Report driftwatch errors with their class and exit with a matching code."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DriftwatchError as exc:
            click.echo(f"Error [{exc.kind.value}/{exc.reason}]: {exc.message}", err=True)
            sys.exit(EXIT_CODES[exc.kind])

    return wrapper


class App:
    """Wires the store, broker and services from settings."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.store = JobStore.from_url(settings.database_url)
        self.store.init_schema()
        self.broker = CredentialBroker(
            region=settings.sts_region, timeout=settings.remote_timeout_seconds
        )
        notifier = (
            SlackNotifier(settings.slack_webhook_url) if settings.slack_webhook_url else None
        )
        self.orchestrator = DriftOrchestrator(
            self.store, self.broker, settings, notifier=notifier
        )
        self.accounts = AccountService(self.store, self.broker, settings)


pass_app = click.make_pass_decorator(App)


@click.group()
@click.option(
    "--database-url",
    envvar=f"{ENV_PREFIX}_DATABASE_URL",
    default=Settings.database_url,
    show_default=True,
    help="SQLAlchemy database URL.",
)
@click.option("--tick-interval", envvar=f"{ENV_PREFIX}_TICK_INTERVAL", type=int, default=120)
@click.option("--retention-hours", envvar=f"{ENV_PREFIX}_RETENTION_HOURS", type=int, default=24)
@click.option("--max-workers", envvar=f"{ENV_PREFIX}_MAX_WORKERS", type=int, default=5)
@click.option("--remote-timeout", envvar=f"{ENV_PREFIX}_REMOTE_TIMEOUT", type=float, default=20.0)
@click.option("--sts-region", envvar=f"{ENV_PREFIX}_STS_REGION", default="us-east-1")
@click.option("--default-region", envvar=f"{ENV_PREFIX}_DEFAULT_REGION", default="us-east-1")
@click.option("--slack-webhook", envvar=f"{ENV_PREFIX}_SLACK_WEBHOOK", default=None)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(
    ctx,
    database_url,
    tick_interval,
    retention_hours,
    max_workers,
    remote_timeout,
    sts_region,
    default_region,
    slack_webhook,
    verbose,
):
    """Track CloudFormation drift across connected AWS accounts."""
    configure_logging(verbose)
    settings = Settings(
        database_url=database_url,
        tick_interval_seconds=tick_interval,
        retention_hours=retention_hours,
        max_workers=max_workers,
        remote_timeout_seconds=remote_timeout,
        sts_region=sts_region,
        default_region=default_region,
        slack_webhook_url=slack_webhook,
    )
    ctx.obj = App(settings)


@main.command("init-db")
@pass_app
def init_db(app):
    """Create the database tables.

    Every command creates missing tables on startup, so this is only needed to
    prepare a database ahead of time.
    """
    app.store.init_schema()
    click.echo(f"Database ready at {app.settings.database_url}")


@main.command()
@owner_option
@click.option("--role-arn", required=True, help="Cross-account role to assume.")
@click.option("--external-id", required=True, help="External ID required by the role.")
@click.option("--region", default=None, help="Region to track stacks in.")
@click.option("--name", default=None, help="Display name for the account.")
@pass_app
@handle_errors
def connect(app, owner, role_arn, external_id, region, name):
    """Connect an AWS account by assuming its role."""
    grant = app.accounts.connect_account(owner, role_arn, external_id, region=region, name=name)
    click.echo(f"Connected account {grant.account_id} ({grant.region})")


@main.command()
@owner_option
@pass_app
def accounts(app, owner):
    """List connected accounts."""
    click.echo(format_accounts_table(app.accounts.list_accounts(owner)))


@main.command("update-account")
@owner_option
@click.argument("account_id")
@click.option("--name", default=None)
@click.option("--region", default=None)
@pass_app
@handle_errors
def update_account(app, owner, account_id, name, region):
    """Rename an account or change its region."""
    grant = app.accounts.update_account(owner, account_id, name=name, region=region)
    click.echo(f"Updated account {grant.account_id}: name={grant.name!r} region={grant.region}")


@main.command()
@owner_option
@click.argument("account_id")
@pass_app
@handle_errors
def disconnect(app, owner, account_id):
    """Revoke a connected account and its stored stacks."""
    app.accounts.disconnect_account(owner, account_id)
    click.echo(f"Disconnected account {account_id}")


@main.command()
@owner_option
@click.argument("account_id")
@pass_app
@handle_errors
def refresh(app, owner, account_id):
    """Refresh the stack list for an account."""
    records = app.accounts.refresh_stacks(owner, account_id)
    click.echo(f"Refreshed {len(records)} stacks for account {account_id}")


@main.command()
@owner_option
@click.argument("account_id")
@click.argument("stack_name")
@pass_app
@handle_errors
def trigger(app, owner, account_id, stack_name):
    """Start drift detection for a stack."""
    result = app.orchestrator.trigger(owner, account_id, stack_name)
    click.echo(
        json.dumps(
            {
                "remote_operation_id": result.remote_operation_id,
                "status": result.status.value,
                "stack_name": result.stack_name,
                "account_id": result.account_id,
                "region": result.region,
            },
            indent=2,
        )
    )


@main.command()
@owner_option
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format.",
)
@pass_app
def stacks(app, owner, output_format):
    """List stacks with their drift status."""
    views = app.orchestrator.list_stacks_with_drift_status(owner)
    formatters = {"table": format_stacks_table, "json": format_stacks_json}
    click.echo(formatters[output_format](views))


@main.command()
@owner_option
@click.argument("account_id")
@click.argument("stack_name")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["tree", "json", "markdown"]),
    default="tree",
    help="Output format.",
)
@click.option("--redact", is_flag=True, help="Hide expected and actual property values.")
@pass_app
@handle_errors
def drift(app, owner, account_id, stack_name, output_format, redact):
    """Show stored resource drift for a stack."""
    analyzed = app.orchestrator.get_stack_drift(owner, account_id, stack_name)
    if output_format == "json":
        click.echo(format_drift_json(analyzed, redact=redact))
    elif output_format == "markdown":
        click.echo(format_markdown([analyzed], redact=redact))
    else:
        click.echo(format_drift_tree(analyzed, redact=redact))


@main.command()
@owner_option
@click.option("--limit", type=int, default=50)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
)
@pass_app
def jobs(app, owner, limit, output_format):
    """List recent drift jobs."""
    views = app.orchestrator.list_jobs(owner, limit=limit)
    if output_format == "json":
        click.echo(
            json.dumps([{**job_to_dict(v.job), "stale": v.stale} for v in views], indent=2)
        )
    else:
        click.echo(format_jobs_table(views))


@main.command()
@pass_app
def tick(app):
    """Run a single polling tick."""
    report = app.orchestrator.tick()
    if report is None:
        click.echo("A tick is already running.")
        return
    click.echo(
        f"Scanned {report.scanned}: {len(report.completed)} completed, "
        f"{len(report.failed)} failed, {len(report.pending)} pending"
    )
    for operation_id, reason in sorted(report.errors.items()):
        click.echo(f"  {operation_id}: {reason}", err=True)


@main.command()
@pass_app
def run(app):
    """Poll outstanding drift jobs until interrupted."""
    poller = DriftPoller(app.orchestrator, interval_seconds=app.settings.tick_interval_seconds)
    poller.start()
    try:
        while poller.running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        click.echo("Stopping.")
    finally:
        poller.stop()
