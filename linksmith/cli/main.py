#!/usr/bin/env python3
"""
Main CLI for linksmith - adaptive wikilink suggestions.

Usage:
    linksmith suggest "text"            - Suggest wikilinks for text
    linksmith feedback ENTITY --correct - Record a judgment
    linksmith track NOTE ENTITY...      - Record applied links
    linksmith check-removals NOTE       - Detect removed links
    linksmith journey ENTITY            - Trace an entity through the loop
    linksmith dashboard                 - Feedback overview
    linksmith import-catalog FILE       - Replace the entity catalog
    linksmith rebuild-indexes           - Mine co-occurrence and recency
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from loguru import logger

from ..engine.config import Config, SuggestOptions
from ..engine.errors import LinksmithError
from ..engine.indexers.catalog import load_catalog_file
from ..engine.log import setup_logging
from ..engine.models import StrictnessMode
from ..engine.pipeline import SuggestionEngine

console = Console()

CONFIDENCE_COLORS = {"high": "green", "medium": "yellow", "low": "red"}


def _open_engine(ctx: click.Context) -> Tuple[Config, SuggestionEngine]:
    config_path = ctx.obj.get("config_path")
    try:
        config = Config.load(Path(config_path) if config_path else None)
    except FileNotFoundError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    setup_logging(
        ctx.obj.get("log_level") or config.logging.level,
        log_file=config.logging.file,
        rotation=config.logging.rotation,
        retention=config.logging.retention,
    )
    return config, SuggestionEngine.from_config(config)


def _emit_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_path: Optional[str], verbose: bool):
    """linksmith - adaptive wikilink suggestions."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = "DEBUG" if verbose else None


@cli.command()
@click.argument("content", required=False)
@click.option("--file", "-f", "file_path", type=click.Path(exists=True, dir_okay=False), help="Read content from a file")
@click.option("--note-path", "-n", help="Vault-relative path of the note")
@click.option("--max", "-m", "max_suggestions", type=int, default=None, help="Max suggestions (1-10)")
@click.option("--strictness", "-s", type=click.Choice([m.value for m in StrictnessMode]), default=None)
@click.option("--detail", is_flag=True, help="Show per-layer score breakdown")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def suggest(ctx, content: Optional[str], file_path: Optional[str], note_path: Optional[str],
            max_suggestions: Optional[int], strictness: Optional[str], detail: bool, as_json: bool):
    """Suggest wikilinks for text."""
    if content is None and file_path is None:
        console.print("[red]Provide CONTENT or --file[/red]")
        sys.exit(2)
    if file_path is not None:
        content = Path(file_path).read_text(encoding="utf-8")

    config, engine = _open_engine(ctx)
    try:
        options = SuggestOptions(
            max_suggestions=max_suggestions or config.suggestions.max_suggestions,
            strictness=strictness or config.suggestions.strictness,
            note_path=note_path,
            detail=detail,
        )
        result = asyncio.run(engine.suggest(content, options))
    except (LinksmithError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        engine.close()

    if as_json:
        _emit_json(result.to_dict())
        return

    if not result.suggestions:
        console.print("[yellow]No suggestions[/yellow]")
        return

    console.print(result.suffix, markup=False)
    if result.detailed:
        table = Table(title="Suggestions")
        table.add_column("Entity", style="cyan")
        table.add_column("Score", justify="right")
        table.add_column("Confidence")
        table.add_column("Top layer")
        table.add_column("Feedback", justify="right")
        for s in result.detailed:
            color = CONFIDENCE_COLORS.get(s.confidence, "white")
            table.add_row(
                s.entity,
                f"{s.total_score:.1f}",
                f"[{color}]{s.confidence}[/{color}]",
                s.breakdown.top_contributing_layer(),
                str(s.feedback_count),
            )
        console.print(table)


@cli.command()
@click.argument("entity")
@click.option("--note-path", "-n", required=True, help="Note the suggestion was made for")
@click.option("--correct/--incorrect", default=True, help="Was the suggestion right?")
@click.option("--context", default="explicit", help="Feedback context tag")
@click.pass_context
def feedback(ctx, entity: str, note_path: str, correct: bool, context: str):
    """Record an accept/reject judgment."""
    _, engine = _open_engine(ctx)
    try:
        report = engine.record_feedback(entity, context, note_path, correct)
    finally:
        engine.close()

    verdict = "[green]correct[/green]" if correct else "[red]incorrect[/red]"
    console.print(f"Recorded {verdict} for [cyan]{entity}[/cyan] (#{report.entry.id})")
    if report.suppression_updated:
        state = "now suppressed" if report.suppressed else "no longer suppressed"
        console.print(f"[yellow]{entity} is {state}[/yellow]")


@cli.command()
@click.argument("note_path")
@click.argument("entities", nargs=-1, required=True)
@click.pass_context
def track(ctx, note_path: str, entities: Tuple[str, ...]):
    """Record wikilinks applied to a note."""
    _, engine = _open_engine(ctx)
    try:
        count = engine.track_applications(note_path, entities)
    finally:
        engine.close()
    console.print(f"[green]✓[/green] Tracking {count} link(s) in {note_path}")


@cli.command(name="check-removals")
@click.argument("note_path")
@click.option("--file", "-f", "file_path", type=click.Path(exists=True, dir_okay=False),
              help="Current note content (defaults to the note in the vault)")
@click.pass_context
def check_removals(ctx, note_path: str, file_path: Optional[str]):
    """Turn removed auto-applied links into negative feedback."""
    config, engine = _open_engine(ctx)
    try:
        source = Path(file_path) if file_path else config.vault_path / note_path
        if not source.exists():
            console.print(f"[red]Note not found:[/red] {source}")
            sys.exit(1)
        removed = engine.detect_removals(note_path, source.read_text(encoding="utf-8"))
    finally:
        engine.close()

    if not removed:
        console.print("[green]No removed links[/green]")
        return
    for entity in removed:
        console.print(f"[red]-[/red] {escape(f'[[{entity}]]')} removed")


@cli.command()
@click.argument("entity")
@click.option("--days", "-d", default=30, help="Lookback window in days")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def journey(ctx, entity: str, days: int, as_json: bool):
    """Trace an entity through discover, suggest, apply, learn and adapt."""
    _, engine = _open_engine(ctx)
    try:
        data = engine.entity_journey(entity, days_back=days)
    finally:
        engine.close()

    if as_json:
        _emit_json(data)
        return

    stages = data["stages"]
    discover, suggest_stage, apply, learn, adapt = (
        stages["discover"], stages["suggest"], stages["apply"], stages["learn"], stages["adapt"]
    )
    console.print(f"[bold]{data['entity']}[/bold]")
    console.print(f"  Discover: {discover.get('reason', 'not in catalog')}")
    console.print(f"  Suggest:  {suggest_stage['total_suggestions']} scored event(s)")
    for event in suggest_stage["recent"][:5]:
        mark = "[green]passed[/green]" if event["passed"] else "[dim]filtered[/dim]"
        console.print(f"    {event['total_score']:.1f} {mark} {event['note_path']} ({event['top_contributing_layer']})")
    console.print(f"  Apply:    {apply['applied_count']} active, {apply['removed_count']} removed")
    console.print(f"  Learn:    {learn['total_feedback']} judgment(s), accuracy {learn['accuracy']:.0%}")
    console.print(f"  Adapt:    {adapt['boost_tier']} ({adapt['current_boost']:+d})"
                  + (" [red]suppressed[/red]" if adapt["suppressed"] else ""))
    if adapt.get("suppression_reason"):
        console.print(f"            {adapt['suppression_reason']}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def dashboard(ctx, as_json: bool):
    """Show feedback totals, boost tiers and suppressions."""
    _, engine = _open_engine(ctx)
    try:
        data = engine.dashboard()
    finally:
        engine.close()

    if as_json:
        _emit_json(data)
        return

    console.print(
        f"Feedback: {data['total_feedback']} "
        f"([green]{data['total_correct']}[/green] / [red]{data['total_incorrect']}[/red]), "
        f"accuracy {data['overall_accuracy']:.1%}"
    )
    sources = data["feedback_sources"]
    console.print(f"Sources: explicit {sources['explicit']['count']}, implicit {sources['implicit']['count']}")
    apps = data["applications"]
    console.print(f"Applications: {apps.get('applied', 0)} applied, {apps.get('removed', 0)} removed")

    table = Table(title="Boost tiers")
    table.add_column("Tier", style="cyan")
    table.add_column("Entities")
    for tier in data["boost_tiers"]:
        table.add_row(tier["label"], ", ".join(e["entity"] for e in tier["entities"]) or "-")
    table.add_row("Learning", ", ".join(e["entity"] for e in data["learning"]) or "-")
    console.print(table)

    if data["suppressed"]:
        console.print("\n[bold]Suppressed:[/bold]")
        for s in data["suppressed"]:
            console.print(f"  • {s['entity']} ({s['false_positive_rate']:.0%} false positives)")


@cli.command(name="import-catalog")
@click.argument("catalog_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def import_catalog(ctx, catalog_file: str):
    """Replace the entity catalog from a YAML or JSON file."""
    _, engine = _open_engine(ctx)
    try:
        entities = load_catalog_file(catalog_file)
        count = engine.replace_catalog(entities)
    except ValueError as e:
        console.print(f"[red]Invalid catalog:[/red] {e}")
        sys.exit(1)
    finally:
        engine.close()
    console.print(f"[green]✓[/green] Imported {count} entities")


@cli.command(name="rebuild-indexes")
@click.pass_context
def rebuild_indexes(ctx):
    """Mine co-occurrence and recency indexes from the vault."""
    config, engine = _open_engine(ctx)
    try:
        cooccurrence, recency = engine.rebuild_indexes(
            config.vault_path,
            excluded_folders=config.indexes.excluded_folders,
            min_count=config.indexes.cooccurrence_min_count,
        )
    except LinksmithError as e:
        console.print(f"[red]Error:[/red] {e}")
        logger.exception("Index rebuild failed")
        sys.exit(1)
    finally:
        engine.close()

    console.print(
        f"[green]✓[/green] Scanned {cooccurrence.total_notes_scanned} notes: "
        f"{cooccurrence.total_associations} associations, {len(recency)} dated entities"
    )


def main():
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
