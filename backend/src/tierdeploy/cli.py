"""Operator command surface: deploy, status, rollback."""

import signal
from typing import Optional

import typer
from dotenv import load_dotenv

from tierdeploy.adapters import build_adapters, build_orchestrator
from tierdeploy.audit import JsonlRolloutLog, StateFile
from tierdeploy.config import configure_logging, settings
from tierdeploy.errors import ConfigError
from tierdeploy.models import TIER_ORDER, Tier
from tierdeploy.orchestrator import DeploymentOrchestrator, OrchestrationResult
from tierdeploy.plan import load_plan

app = typer.Typer(
    name="tierdeploy",
    help="Provision, sync secrets and roll out database/backend/frontend tiers",
    no_args_is_help=True,
)


def _orchestrator() -> DeploymentOrchestrator:
    return build_orchestrator(settings, build_adapters(settings))


def _setup() -> None:
    configure_logging(settings.LOG_LEVEL)
    # Store token may live outside .env
    load_dotenv("secret_store.env")


def _report(result: OrchestrationResult) -> None:
    typer.echo(f"{result.state.value}: {result.reason}")
    for record in result.records:
        typer.echo(f"  {record.tier.value:<9} {record.outcome.value:<10} {record.image}  {record.reason}")


def _load(environment: str):
    try:
        return load_plan(environment, settings.DEPLOY_CONFIG_DIR)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def deploy(environment: str = typer.Argument(..., help="Environment name, e.g. staging")):
    """Run the full deployment. Exit code 0 Promoted, 1 Failed, 2 RolledBack."""
    _setup()
    plan = _load(environment)
    orchestrator = _orchestrator()

    def _on_signal(signum, frame):
        typer.echo("Cancelling at next safe checkpoint...", err=True)
        orchestrator.cancel()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        result = orchestrator.run(plan)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    _report(result)
    raise typer.Exit(result.exit_code)


@app.command()
def status():
    """Show the current state and the last rollout record per tier."""
    snapshot = StateFile(settings.STATE_PATH).load()
    if snapshot is None:
        typer.echo("State: no deployment recorded")
    else:
        tier = f"({snapshot['tier']})" if snapshot.get("tier") else ""
        typer.echo(f"State: {snapshot['state']}{tier}  attempt {snapshot.get('attempt_id', '-')}")
        last = (snapshot.get("transitions") or [{}])[-1]
        if last.get("reason"):
            typer.echo(f"Reason: {last['reason']}")

    latest = JsonlRolloutLog(settings.AUDIT_LOG_PATH).latest_by_tier()
    for tier in TIER_ORDER:
        record = latest.get(tier)
        if record is None:
            typer.echo(f"  {tier.value:<9} -")
            continue
        typer.echo(
            f"  {tier.value:<9} {record.outcome.value:<10} {record.image}  "
            f"{record.timestamp.isoformat()}  {record.reason}"
        )


@app.command()
def rollback(
    tier: Tier = typer.Argument(..., help="Tier to restore to its last-known-good image"),
    environment: Optional[str] = typer.Option(None, "--environment", "-e", help="Defaults to APP_ENV"),
):
    """Roll one tier back to its last-known-good image."""
    _setup()
    plan = _load(environment or settings.APP_ENV)
    result = _orchestrator().rollback(plan, tier)
    _report(result)
    raise typer.Exit(result.exit_code)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
