"""mneme CLI."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from mneme.config import Config
from mneme.engine import KnowledgeEngine
from mneme.exceptions import MnemeError
from mneme.log import setup_logging


def _get_engine(data_dir: str | None = None) -> KnowledgeEngine:
    config = Config()
    if data_dir:
        config.data_dir = Path(data_dir)
    setup_logging(config.logging)
    return KnowledgeEngine(config)


def _close(engine: KnowledgeEngine) -> None:
    asyncio.run(engine.close())


@click.group()
@click.option("--data-dir", envvar="MNEME_DATA_DIR", default=None, help="Data directory")
@click.option("--user", "-u", envvar="MNEME_USER", default="me", show_default=True, help="User id")
@click.pass_context
def main(ctx: click.Context, data_dir: str | None, user: str) -> None:
    """mneme: personal knowledge memory engine."""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir
    ctx.obj["user"] = user


@main.command()
@click.argument("text")
@click.option("--conversation-id", "-c", default="", help="Conversation identifier")
@click.pass_context
def remember(ctx: click.Context, text: str, conversation_id: str) -> None:
    """Extract and store knowledge from TEXT."""
    engine = _get_engine(ctx.obj.get("data_dir"))
    try:
        out = asyncio.run(engine.remember(ctx.obj["user"], text, conversation_id=conversation_id))
    except MnemeError as e:
        raise click.ClickException(str(e)) from e
    finally:
        _close(engine)
    ext = out["extracted"]
    click.echo(out["summary"])
    click.echo(
        f"  entities={ext['entities']} relationships={ext['relationships']} "
        f"memories={ext['memories']} confidence={out['confidence']:.2f}"
    )
    for err in out["errors"]:
        click.echo(f"  warning: {err}", err=True)


@main.command()
@click.argument("query")
@click.option("--type", "-t", "entity_type", default=None, help="Entity type filter")
@click.option("--time-range", "-r", default=None,
              type=click.Choice(["today", "yesterday", "week", "month", "year", "all"]),
              help="Time window")
@click.option("--limit", "-l", default=10, help="Max results")
@click.pass_context
def recall(ctx: click.Context, query: str, entity_type: str | None,
           time_range: str | None, limit: int) -> None:
    """Search memory, answering QUERY if it is a question."""
    engine = _get_engine(ctx.obj.get("data_dir"))
    try:
        out = asyncio.run(engine.recall(
            ctx.obj["user"], query, entity_type=entity_type, time_range=time_range, limit=limit,
        ))
    except MnemeError as e:
        raise click.ClickException(str(e)) from e
    finally:
        _close(engine)
    if out["answer"]:
        click.echo(out["answer"])
        click.echo("")
    if not out["entities"] and not out["memories"]:
        click.echo("No results found.")
        return
    for e in out["entities"]:
        click.echo(f"[{e['type']}] {e['name']} (mentions: {e['mention_count']})")
    for m in out["memories"]:
        preview = m["content"][:200].replace("\n", " ")
        click.echo(f"- {preview}  ({m['type']}, importance {m['importance']}, id {m['id']})")


@main.command()
@click.argument("name")
@click.pass_context
def entity(ctx: click.Context, name: str) -> None:
    """Show what is known about NAME."""
    engine = _get_engine(ctx.obj.get("data_dir"))
    try:
        out = engine.get_entity(ctx.obj["user"], name)
    except MnemeError as e:
        raise click.ClickException(str(e)) from e
    finally:
        _close(engine)
    if not out["found"]:
        click.echo(out["message"])
        return
    ent = out["entity"]
    click.echo(f"{ent['name']} ({ent['type']})")
    if ent["description"]:
        click.echo(f"  {ent['description']}")
    click.echo(f"  Mentions: {ent['mention_count']}")
    for r in out["relationships"]:
        click.echo(f"  {r.get('source_name', r['source_id'])} -[{r['type']}]-> "
                   f"{r.get('target_name', r['target_id'])}")
    for m in out["memories"]:
        click.echo(f"  - {m['content'][:160]}")


@main.command()
@click.option("--type", "-t", "entity_type", default=None, help="Entity type, or 'all'")
@click.option("--limit", "-l", default=20, help="Number of entities")
@click.pass_context
def entities(ctx: click.Context, entity_type: str | None, limit: int) -> None:
    """List known entities, most recently mentioned first."""
    engine = _get_engine(ctx.obj.get("data_dir"))
    try:
        out = engine.list_entities(ctx.obj["user"], entity_type=entity_type, limit=limit)
    except MnemeError as e:
        raise click.ClickException(str(e)) from e
    finally:
        _close(engine)
    for e in out["entities"]:
        click.echo(f"[{e['type']}] {e['name']}  mentions={e['mention_count']}  id={e['id']}")
    click.echo(f"{out['count']} entities")


@main.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show knowledge graph statistics."""
    engine = _get_engine(ctx.obj.get("data_dir"))
    try:
        st = engine.get_stats(ctx.obj["user"])
    finally:
        _close(engine)
    click.echo("mneme Knowledge Stats")
    click.echo(f"  Entities:            {st['total_entities']}")
    click.echo(f"  Relationships:       {st['total_relationships']}")
    click.echo(f"  Memories:            {st['total_memories']}")
    click.echo(f"  Compressed memories: {st['compressed_memories']}")
    click.echo(f"  Recent mentions:     {st['recent_mentions']}")
    for t, n in sorted(st["entity_types"].items()):
        click.echo(f"    {t}: {n}")


@main.command()
@click.argument("memory_id")
@click.option("--yes", "-y", "confirm", is_flag=True, help="Confirm deletion")
@click.pass_context
def forget(ctx: click.Context, memory_id: str, confirm: bool) -> None:
    """Delete the memory MEMORY_ID."""
    engine = _get_engine(ctx.obj.get("data_dir"))
    try:
        out = engine.forget(ctx.obj["user"], "memory", memory_id, confirm=confirm)
    except MnemeError as e:
        raise click.ClickException(str(e)) from e
    finally:
        _close(engine)
    if out.get("confirm_required"):
        click.echo("Pass --yes to delete this memory.")
    elif out["deleted"]:
        click.echo(f"Deleted memory {memory_id}")
    else:
        click.echo(out["message"])


@main.command()
@click.pass_context
def compact(ctx: click.Context) -> None:
    """Compress stale memories and delete expired ones."""
    engine = _get_engine(ctx.obj.get("data_dir"))
    try:
        out = asyncio.run(engine.compact(ctx.obj["user"]))
    finally:
        _close(engine)
    click.echo(f"Compressed {out['compressed_count']} memories into {len(out['created_ids'])} summaries; "
               f"deleted {out['deleted_count']}")
    for err in out["errors"]:
        click.echo(f"  warning: {err}", err=True)


@main.command()
@click.option("--missing-only", is_flag=True, help="Only embed memories without a vector")
@click.pass_context
def reindex(ctx: click.Context, missing_only: bool) -> None:
    """Re-embed memories with the configured provider."""
    engine = _get_engine(ctx.obj.get("data_dir"))
    try:
        out = asyncio.run(engine.reindex(ctx.obj["user"], only_missing=missing_only))
    except MnemeError as e:
        raise click.ClickException(str(e)) from e
    finally:
        _close(engine)
    click.echo(f"Indexed {out['indexed']} memories ({len(out['errors'])} errors)")


@main.command()
@click.option("--host", "-h", default=None, help="Bind host")
@click.option("--port", "-p", default=None, type=int, help="Bind port")
@click.option("--no-schedule", is_flag=True, help="Disable periodic compaction")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, no_schedule: bool) -> None:
    """Start the HTTP API server."""
    import uvicorn
    from mneme.api.routes import create_app

    config = Config()
    data_dir = ctx.obj.get("data_dir")
    if data_dir:
        config.data_dir = Path(data_dir)
    host = host or config.api.host
    port = port or config.api.port
    app = create_app(config=config, schedule_compaction=not no_schedule)
    click.echo(f"Starting mneme API on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
