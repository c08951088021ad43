"""CLI entry point for tag-finder."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from importlib import resources
from importlib.metadata import version
from typing import Any

import click
import jsonschema

from tag_finder.checker import ResultStream, check_digests
from tag_finder.registry.client import DEFAULT_TIMEOUT, DEFAULT_WORKERS, RegistryClient
from tag_finder.registry.errors import TagFinderError
from tag_finder.registry.parser import normalize_digest, resolve_image
from tag_finder.scan import ScanSummary

logger = logging.getLogger(__name__)


# Number of progress lines printed over a full scan.
_PROGRESS_STEPS = 10


def _drain(stream: ResultStream, summary: ScanSummary, verbose: bool) -> None:
    """Consume *stream* until it closes, reporting progress and matches."""
    step = max(1, summary.total // _PROGRESS_STEPS)
    for result in stream:
        if summary.add(result):
            click.echo(f"  ✓ match: {result.tag}", err=True)
        elif not result.ok and verbose:
            click.echo(f"  ✗ {result.tag}: {result.error}", err=True)
        if summary.processed % step == 0 or summary.complete:
            click.echo(f"  Progress: {summary.processed}/{summary.total} tags", err=True)


def _drain_until_closed(stream: ResultStream, summary: ScanSummary, verbose: bool) -> None:
    """Drain *stream*; on Ctrl+C stop dispatching new tags and keep draining."""
    while True:
        try:
            _drain(stream, summary, verbose)
            return
        except KeyboardInterrupt:
            if not summary.cancelled:
                click.echo("  Interrupted, waiting for in-flight requests...", err=True)
                stream.cancel()
                summary.cancelled = True


def _validate_report(report: dict[str, Any]) -> None:
    """Validate *report* against the packaged JSON Schema."""
    schema_ref = resources.files("tag_finder.schemas").joinpath("report.schema.json")
    schema = json.loads(schema_ref.read_text(encoding="utf-8"))
    try:
        jsonschema.validate(instance=report, schema=schema)
    except jsonschema.ValidationError as exc:
        raise click.ClickException(
            f"Report schema validation failed: {exc.message}"
        ) from exc


@click.command(name="tag-finder")
@click.argument("image")
@click.argument("digest")
@click.option(
    "-w",
    "--workers",
    type=click.IntRange(min=1),
    default=DEFAULT_WORKERS,
    show_default=True,
    envvar="TAG_FINDER_WORKERS",
    help="Number of concurrent HTTP requests.",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=DEFAULT_TIMEOUT,
    show_default=True,
    envvar="TAG_FINDER_TIMEOUT",
    help="Per-request timeout in seconds.",
)
@click.option(
    "--json",
    "as_json",
    is_flag=True,
    default=False,
    help="Print a JSON report instead of the matching tags.",
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=False,
    help="Enable verbose (DEBUG) logging and report per-tag errors.",
)
@click.version_option(package_name="tag-finder", message="tag-finder %(version)s")
@click.pass_context
def main(
    ctx: click.Context,
    image: str,
    digest: str,
    workers: int,
    timeout: float,
    as_json: bool,
    verbose: bool,
) -> None:
    """Find the tags of IMAGE that point at DIGEST.

    IMAGE is an image reference such as nginx, docker.io/myorg/myrepo,
    ghcr.io/owner/repo or registry.example.com:5000/project/image.
    DIGEST may omit its sha256: prefix.

    Exits with 0 if at least one matching tag was found, 1 otherwise.
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        ref = resolve_image(image)
        target = normalize_digest(digest)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Fetching tags for {ref.repository} on {ref.registry}", err=True)

    with RegistryClient(timeout=timeout, pool_size=workers) as client:
        try:
            tags = client.list_tags(ref)
        except TagFinderError as exc:
            raise click.ClickException(f"Failed to list tags: {exc}") from exc

        click.echo(f"  Checking {len(tags)} tags with {workers} workers...", err=True)
        summary = ScanSummary(len(tags), target)
        stream = check_digests(client, ref, tags, target, workers)
        _drain_until_closed(stream, summary, verbose)

    status = "Scan complete" if summary.complete else "Scan stopped"
    click.echo(
        f"  {status}: scanned {summary.processed}/{summary.total} tags, "
        f"{len(summary.errors)} error(s)",
        err=True,
    )

    if as_json:
        report: dict[str, Any] = {
            "version": version("tag-finder"),
            "request": {
                "image": image,
                "registry": ref.registry,
                "repository": ref.repository,
                "digest": target,
                "workers": workers,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            **summary.to_dict(),
        }
        _validate_report(report)
        click.echo(json.dumps(report, indent=2, ensure_ascii=False))
    elif summary.matches:
        for tag in sorted(summary.matches):
            click.echo(tag)
    else:
        click.echo("No tags found matching the digest.", err=True)

    ctx.exit(0 if summary.matches else 1)


if __name__ == "__main__":
    main()
