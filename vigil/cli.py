"""Vigil CLI — replay event logs through the moderation engine."""

import json
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from vigil import __version__

console = Console()

_ACTION_STYLES = {"allow": "green", "blur": "yellow", "hide": "magenta", "block": "red"}


def _read_events(path: str):
    from vigil.events.models import RawEvent

    events = []
    with open(path) as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(RawEvent.from_dict(json.loads(line)))
            except (json.JSONDecodeError, TypeError, ValueError) as e:
                console.print(f"  [yellow]![/] line {lineno}: skipped ({e})")
    return events


def _build_coordinator(config_path: str | None, cache_dir: str | None, now: float | None):
    from vigil.cache import InMemoryCache, JsonFileCache
    from vigil.config import load_config
    from vigil.moderation.coordinator import Coordinator

    config = load_config(config_path)
    cache = JsonFileCache(cache_dir) if cache_dir else InMemoryCache()
    kwargs = {"clock": lambda: now} if now is not None else {}
    coordinator = Coordinator(config, cache=cache, **kwargs)
    coordinator.restore()
    return coordinator


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show engine log output")
def main(verbose: bool):
    """Vigil — community moderation decision engine.

    Combines reports, labeler annotations and mute lists into one
    explainable moderation action per piece of content.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


# ── Replay ───────────────────────────────────────────────────────────


@main.command()
@click.argument("events_file")
@click.option("--caller", "-c", required=True, help="Pubkey of the viewer")
@click.option("--config", "config_path", default=None, help="YAML engine config")
@click.option("--cache-dir", default=None, help="Persist engine state in this directory")
@click.option("--network", "-n", multiple=True, help="Only count reports from these pubkeys")
@click.option("--labeler", "-l", multiple=True, help="Subscribe to a labeler")
@click.option("--mute-list", "-m", multiple=True, help="Subscribe to a mute list owner")
@click.option("--target", "-t", multiple=True, help="Only show decisions for these event ids")
@click.option("--now", type=float, default=None, help="Evaluate as of this unix time")
def replay(
    events_file: str,
    caller: str,
    config_path: str | None,
    cache_dir: str | None,
    network: tuple,
    labeler: tuple,
    mute_list: tuple,
    target: tuple,
    now: float | None,
):
    """Ingest a JSONL event log and print a decision for each content event.

    Report, label and mute-list events feed the stores; every other event
    in the log is treated as content to moderate.
    """
    from vigil.errors import CapacityError
    from vigil.events.models import EventKind

    console.print(f"\n[bold blue]Vigil[/] — Replaying: {events_file}\n")

    coordinator = _build_coordinator(config_path, cache_dir, now)
    try:
        if network:
            coordinator.subscribe_to_network_reports(network)
        for pubkey in labeler:
            coordinator.subscribe_to_labeler(pubkey)
        for pubkey in mute_list:
            coordinator.subscribe_to_mute_list(pubkey)
    except CapacityError as e:
        console.print(f"[red]{e}[/]")
        return

    events = _read_events(events_file)
    signal_kinds = {int(k) for k in EventKind}
    ingested = coordinator.ingest_many(e for e in events if e.kind in signal_kinds)
    content = [e for e in events if e.kind not in signal_kinds and (not target or e.id in target)]
    console.print(f"  Ingested {ingested} signal events, {len(content)} content events to check\n")

    if not content:
        console.print("[yellow]No content events to moderate.[/]")
        return

    table = Table(title=f"Decisions for {caller[:16]}")
    table.add_column("Event", style="cyan")
    table.add_column("Action")
    table.add_column("Confidence", justify="right")
    table.add_column("Sources")

    for event in content:
        decision = coordinator.check_content(caller, event)
        style = _ACTION_STYLES[decision.action.value]
        table.add_row(
            event.id[:16],
            f"[{style}]{decision.action.value}[/]",
            f"{decision.confidence:.2f}",
            "\n".join(decision.reasons) or "-",
        )

    console.print(table)


# ── Reports ──────────────────────────────────────────────────────────


@main.command()
@click.argument("target_id")
@click.option("--cache-dir", required=True, help="Engine state directory")
@click.option("--now", type=float, default=None, help="Evaluate as of this unix time")
def reports(target_id: str, cache_dir: str, now: float | None):
    """Show the report aggregation for TARGET_ID from persisted state."""
    coordinator = _build_coordinator(None, cache_dir, now)
    agg = coordinator.reports.get_reports_for_event(target_id)
    raw = coordinator.reports.raw_reports(target_id)

    if not raw:
        console.print(f"[yellow]No reports stored for {target_id}.[/]")
        return

    style = _ACTION_STYLES[agg.recommendation.value]
    console.print(f"  Recommendation: [{style}]{agg.recommendation.value}[/] ({agg.confidence:.2f})")
    console.print(f"  Active: {agg.total_count} ({agg.trusted_count} trusted), stored: {len(raw)}")
    for report_type, count in sorted(agg.counts_by_type.items(), key=lambda kv: kv[0].value):
        console.print(f"    - {report_type.value}: {count}")


# ── Config ───────────────────────────────────────────────────────────


@main.command(name="config")
@click.option("--config", "config_path", default=None, help="YAML engine config")
def dump_config(config_path: str | None):
    """Print the effective engine configuration as YAML."""
    import yaml

    from vigil.config import load_config

    try:
        config = load_config(config_path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Invalid config:[/] {e}")
        raise SystemExit(1)

    console.print(yaml.safe_dump(config.to_dict(), sort_keys=False))


if __name__ == "__main__":
    main()
