"""Convergence CLI.

Offline tooling around the controllers: inspect the effective configuration,
and evaluate revision selection and drift admission against manifest files
without a cluster.

Usage:
    convergence config                    # Show configuration from the environment
    convergence plan latest plans.yaml    # Latest revision of every plan
    convergence drift check configs.yaml  # Which configurations would drift now
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import click
import yaml

from .admission import DriftSettings, FleetSnapshot, evaluate
from .config import Config, ConfigurationError
from .loader import LoaderError, load_manifests, select
from .models import Configuration, Plan, PlanRevision, Revision
from .revisions import VersionParseError, latest_revision
from .status import as_utc


def load_or_fail(path: Path) -> list:
    """Load manifests, turning loader errors into CLI errors."""
    try:
        return load_manifests(path)
    except LoaderError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version="0.1.0", prog_name="convergence")
def cli() -> None:
    """Convergence controller tooling.

    \b
    Quick Start:
        convergence config
        convergence plan latest manifests.yaml
        convergence drift check manifests.yaml
    """
    pass


# =============================================================================
# Config Command
# =============================================================================


@cli.command("config")
def show_config() -> None:
    """Show the configuration loaded from the environment."""
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    data = {
        "driftControllerInterval": config.drift_controller_interval_seconds,
        "driftInterval": config.drift_interval_seconds,
        "driftThreshold": config.drift_threshold,
        "maxConcurrentReconciles": config.max_concurrent_reconciles,
        "reconcileTimeout": config.reconcile_timeout_seconds,
        "watchNamespaces": list(config.watch_namespaces),
        "controllers": sorted(config.enabled_controllers),
        "logLevel": config.log_level,
    }
    click.echo(yaml.safe_dump(data, sort_keys=False), nl=False)


# =============================================================================
# Plan Commands
# =============================================================================


@cli.group()
def plan() -> None:
    """Plan and revision commands."""
    pass


@plan.command("latest")
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def plan_latest(manifest: Path) -> None:
    """Show the latest revision of every plan in MANIFEST.

    Plans are read directly; revisions without a plan in the file are grouped
    by the plan they name.
    """
    objects = load_or_fail(manifest)

    plans: dict[str, list[PlanRevision]] = {}
    for item in select(objects, Plan):
        plans.setdefault(item.name, []).extend(item.spec.revisions)
    for item in select(objects, Revision):
        entries = plans.setdefault(item.spec.plan.name, [])
        if not any(e.version == item.spec.plan.revision for e in entries):
            entries.append(PlanRevision(name=item.name, version=item.spec.plan.revision))

    if not plans:
        raise click.ClickException(f"No plans or revisions found in {manifest}")

    failed = False
    for name in sorted(plans):
        revisions = plans[name]
        if not revisions:
            click.echo(f"{name}: no revisions")
            continue
        try:
            latest = latest_revision(revisions)
        except VersionParseError as e:
            click.secho(f"{name}: {e}", fg="red", err=True)
            failed = True
            continue
        click.echo(f"{name}: {latest.version} ({latest.name})")

    if failed:
        raise click.ClickException("Some plans carry invalid revision versions")


# =============================================================================
# Drift Commands
# =============================================================================


@cli.group()
def drift() -> None:
    """Drift detection commands."""
    pass


@drift.command("check")
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--interval", "check_interval", type=int, default=300, show_default=True, help="Check interval in seconds")
@click.option("--drift-interval", type=int, default=10800, show_default=True, help="Quiet period in seconds")
@click.option("--threshold", type=float, default=0.10, show_default=True, help="Largest share of the fleet drifting")
@click.option("--now", "now_text", help="Evaluation time (ISO 8601); defaults to the current time")
def drift_check(
    manifest: Path,
    check_interval: int,
    drift_interval: int,
    threshold: float,
    now_text: str | None,
) -> None:
    """Evaluate drift admission for every configuration in MANIFEST."""
    objects = load_or_fail(manifest)
    configurations = select(objects, Configuration)
    if not configurations:
        raise click.ClickException(f"No configurations found in {manifest}")

    now = datetime.now(UTC)
    if now_text:
        try:
            now = as_utc(datetime.fromisoformat(now_text))
        except ValueError as e:
            raise click.ClickException(f"Invalid --now value: {now_text}") from e

    settings = DriftSettings(
        check_interval=timedelta(seconds=check_interval),
        drift_interval=timedelta(seconds=drift_interval),
        threshold=threshold,
    )
    fleet = FleetSnapshot.from_resources(configurations)

    for item in configurations:
        decision = evaluate(item, fleet, settings=settings, now=now)
        if decision.admitted:
            click.secho(f"{item.key}: admitted", fg="green")
        else:
            click.echo(f"{item.key}: deferred ({decision.gate})")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
