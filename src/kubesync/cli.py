"""kubesync command line.

Usage:
    kubesync run                      # Run the controller (configured from the environment)
    kubesync validate                 # Validate applications and their manifests
    kubesync diff APP                 # Show the diff and plan of one application
    kubesync diff APP --live-file x   # Diff against a YAML snapshot instead of a cluster
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click
import yaml

from .config import DEFAULT_FETCH_TIMEOUT_SECONDS, MAX_MANIFEST_FILE_SIZE_BYTES, SourceType
from .diff import DiffEngine, DiffStatus, ResourceDiff
from .diff_normalizer import create_normalizer_from_env
from .errors import PlanError, SyncError
from .kube_runtime import KubernetesRuntime
from .models import Application
from .operation import Action
from .planner import plan
from .resources import LiveResource
from .runtime import fetch_live
from .source import DirectoryManifestSource, FetchResult, GitManifestSource, ManifestSource
from .spec_loader import SpecLoadError, load_applications

VERSION = "0.1.0"

STATUS_COLORS = {
    DiffStatus.IN_SYNC: "green",
    DiffStatus.OUT_OF_SYNC: "yellow",
    DiffStatus.MISSING: "cyan",
    DiffStatus.ORPHANED: "red",
}


def _source(repos_dir: Path, source_type: str) -> ManifestSource:
    if SourceType(source_type) is SourceType.DIRECTORY:
        return DirectoryManifestSource(repos_dir)
    return GitManifestSource(repos_dir)


def _load_applications(applications_dir: Path) -> list[Application]:
    try:
        return load_applications(applications_dir)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


def load_live_file(path: Path) -> list[LiveResource]:
    """Read a multi-document YAML snapshot of live objects.

    Raises:
        click.ClickException: If the file is too large or not valid YAML.
    """
    if path.stat().st_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise click.ClickException(
            f"File exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )
    try:
        documents = list(yaml.safe_load_all(path.read_text(encoding="utf-8")))
    except yaml.YAMLError as e:
        raise click.ClickException(f"Invalid YAML in {path}: {e}") from e

    objects: list[dict[str, Any]] = []
    for doc in documents:
        if isinstance(doc, dict) and doc.get("kind") == "List":
            objects.extend(item for item in doc.get("items") or [] if isinstance(item, dict))
        elif isinstance(doc, dict):
            objects.append(doc)
    return sorted((LiveResource.from_object(obj) for obj in objects), key=lambda r: r.key)


def _echo_diff(diff: ResourceDiff) -> None:
    click.secho(f"{diff.status.value:<12} {diff.key}", fg=STATUS_COLORS[diff.status])
    for change in diff.changes:
        click.echo(f"    {change.path}: {change.live!r} -> {change.desired!r}")
    if diff.requires_replace:
        click.echo("    (requires replace)")


def _echo_action(action: Action) -> None:
    suffix = ""
    if action.depends_on:
        suffix = f"  after {', '.join(str(k) for k in action.depends_on)}"
    click.echo(f"  [{action.tier}] {action}{suffix}")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="kubesync")
def cli() -> None:
    """kubesync - GitOps continuous-reconciliation controller.

    \b
    Quick start:
      kubesync validate --applications-dir ./apps --repos-dir ./repos
      kubesync diff my-app --live-file snapshot.yaml
      kubesync run
    """
    pass


def _common_options(fn: Any) -> Any:
    fn = click.option(
        "--source-type",
        type=click.Choice([s.value for s in SourceType]),
        default=SourceType.GIT.value,
        envvar="SOURCE_TYPE",
        show_default=True,
        help="Desired-state source",
    )(fn)
    fn = click.option(
        "--repos-dir",
        type=click.Path(exists=True, file_okay=False, path_type=Path),
        default="/repos",
        envvar="REPOS_DIR",
        show_default=True,
        help="Directory holding one checkout per repository",
    )(fn)
    fn = click.option(
        "--applications-dir",
        type=click.Path(exists=True, file_okay=False, path_type=Path),
        default="/applications",
        envvar="APPLICATIONS_DIR",
        show_default=True,
        help="Directory of Application definitions",
    )(fn)
    return fn


@cli.command()
def run() -> None:
    """Run the controller until SIGTERM or SIGINT.

    Configuration is read from the environment (see kubesync.config).
    """
    from .main import run as run_controller

    run_controller()


@cli.command()
@_common_options
def validate(applications_dir: Path, repos_dir: Path, source_type: str) -> None:
    """Validate applications and the manifests they point at."""
    applications = _load_applications(applications_dir)
    source = _source(repos_dir, source_type)

    async def fetch_all() -> list[tuple[Application, FetchResult | SyncError]]:
        results: list[tuple[Application, FetchResult | SyncError]] = []
        for application in applications:
            try:
                results.append((application, await source.fetch(application)))
            except SyncError as e:
                results.append((application, e))
        return results

    failed = 0
    for application, result in asyncio.run(fetch_all()):
        if isinstance(result, SyncError):
            failed += 1
            click.secho(f"✗ {application.name}: {result}", fg="red")
            continue
        if result.errors:
            failed += 1
            click.secho(
                f"✗ {application.name}: {len(result.errors)} invalid manifests", fg="red"
            )
            for error in result.errors:
                click.echo(f"    {error}")
            continue
        click.secho(
            f"✓ {application.name}: {len(result.resources)} resources at {result.revision}",
            fg="green",
        )

    if failed:
        raise click.ClickException(f"{failed} of {len(applications)} applications invalid")
    click.secho(f"✓ {len(applications)} applications valid", fg="green")


@cli.command()
@click.argument("application_name")
@_common_options
@click.option("--revision", help="Revision to diff (default: the application's target revision)")
@click.option(
    "--live-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML snapshot of live objects to diff against instead of a cluster",
)
@click.option("--context", "kube_context", envvar="KUBE_CONTEXT", help="kubeconfig context")
@click.option("--prune/--no-prune", default=None, help="Override the application's prune policy")
@click.option("--json", "as_json", is_flag=True, help="Print the diff and plan as JSON")
def diff(
    application_name: str,
    applications_dir: Path,
    repos_dir: Path,
    source_type: str,
    revision: str | None,
    live_file: Path | None,
    kube_context: str | None,
    prune: bool | None,
    as_json: bool,
) -> None:
    """Show how APPLICATION_NAME differs from live state and the plan to sync it."""
    applications = {app.name: app for app in _load_applications(applications_dir)}
    application = applications.get(application_name)
    if application is None:
        raise click.ClickException(f"Application '{application_name}' not found")

    source = _source(repos_dir, source_type)
    policy = application.sync_policy
    prune_enabled = policy.prune if prune is None else prune

    async def refresh() -> tuple[FetchResult, list[LiveResource]]:
        result = await source.fetch(application, revision)
        if live_file is not None:
            live = load_live_file(live_file)
        else:
            live = await fetch_live(
                KubernetesRuntime(context=kube_context), application, DEFAULT_FETCH_TIMEOUT_SECONDS
            )
        return result, live

    try:
        result, live = asyncio.run(refresh())
    except SyncError as e:
        raise click.ClickException(str(e)) from e
    if result.errors:
        for error in result.errors:
            click.secho(f"✗ {error}", fg="red", err=True)
        raise click.ClickException(f"{len(result.errors)} invalid manifests")

    normalizer, normalization_config = create_normalizer_from_env()
    engine = DiffEngine(normalizer, normalization_config.log_normalizations)
    diffs = engine.diff(result.resources, live, prune_enabled)
    try:
        actions = plan(
            diffs,
            allow_destructive=policy.allow_destructive,
            allow_empty=policy.allow_empty,
        )
    except PlanError as e:
        raise click.ClickException(f"Planning failed: {e}") from e

    if as_json:
        click.echo(
            json.dumps(
                {
                    "application": application.name,
                    "revision": result.revision,
                    "diff": [d.to_dict() for d in diffs],
                    "plan": [
                        {"tier": a.tier, "action": a.type.value, "resource": str(a.key)}
                        for a in actions
                    ],
                },
                indent=2,
                default=str,
            )
        )
        return

    click.echo(f"{application.name} at {result.revision}")
    for resource_diff in diffs:
        _echo_diff(resource_diff)

    if not actions:
        click.secho("✓ In sync, nothing to do", fg="green")
        return
    click.echo(f"\nPlan ({len(actions)} actions):")
    for action in actions:
        _echo_action(action)


if __name__ == "__main__":
    cli()
