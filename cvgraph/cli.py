"""cvgraph CLI — initialise and inspect the checkpoint database.

    cvgraph init-db
    cvgraph stats
    cvgraph threads u1 --limit 10
    cvgraph history <thread-id>
    cvgraph clear --thread <thread-id> --yes
"""

from __future__ import annotations

import json

import click

from cvgraph.checkpoint import CheckpointStore
from cvgraph.config import load_settings
from cvgraph.db import Database
from cvgraph.logging import setup_logging
from cvgraph.threads import ThreadRegistry


def _open(ctx: click.Context) -> tuple[CheckpointStore, ThreadRegistry]:
    db = Database(ctx.obj["db_path"])
    return CheckpointStore(db), ThreadRegistry(db)


@click.group()
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
              default=None, help="YAML settings file")
@click.option("--db", "db_path", default=None, help="SQLite file (overrides settings)")
@click.option("-v", "--verbose", is_flag=True, help="Log to console at debug level")
@click.pass_context
def main(ctx, config_path, db_path, verbose):
    """Inspect cvgraph threads and checkpoints."""
    settings = load_settings(config_path)
    ctx.obj = {"settings": settings, "db_path": db_path or settings.db_path}
    if verbose:
        setup_logging("cli", log_level="debug", console=True)


@main.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the checkpoints and threads tables."""
    checkpoints, threads = _open(ctx)
    stats = checkpoints.stats()
    click.echo(f"Database ready: {ctx.obj['db_path']}")
    click.echo(
        f"  checkpoints={stats['checkpoint_count']}  "
        f"threads={threads.stats()['total_threads']}  "
        f"size={stats['db_size_bytes'] / 1024 / 1024:.2f} MB"
    )


@main.command()
@click.pass_context
def stats(ctx):
    """Print checkpoint and thread statistics as JSON."""
    checkpoints, threads = _open(ctx)
    click.echo(json.dumps({"checkpoints": checkpoints.stats(), "threads": threads.stats()}, indent=2))


@main.command()
@click.argument("user_id")
@click.option("--limit", default=50, show_default=True)
@click.option("--offset", default=0, show_default=True)
@click.pass_context
def threads(ctx, user_id, limit, offset):
    """List a user's threads, most recently active first."""
    _, registry = _open(ctx)
    for thread in registry.list(user_id, limit=limit, offset=offset):
        click.echo(f"{thread.id}  {thread.updated_at}  {thread.title}")


@main.command()
@click.argument("thread_id")
@click.option("--full", is_flag=True, help="Dump each state snapshot")
@click.pass_context
def history(ctx, thread_id, full):
    """Show a thread's checkpoints, newest first."""
    checkpoints, _ = _open(ctx)
    count = 0
    for ckpt in checkpoints.list(thread_id):
        count += 1
        meta = ckpt.step_metadata
        click.echo(
            f"{ckpt.checkpoint_id}  parent={ckpt.parent_checkpoint_id or '—'}  "
            f"step={meta.get('step')}  source={meta.get('source')}  node={meta.get('node') or '—'}  "
            f"signal={ckpt.state.routing_signal}"
        )
        if full:
            click.echo(json.dumps(ckpt.state.to_dict(), indent=2, ensure_ascii=False))
    if count == 0:
        click.echo(f"No checkpoints for thread {thread_id}")


@main.command()
@click.option("--thread", "thread_id", default=None, help="Only this thread's checkpoints")
@click.option("--threads-too", is_flag=True, help="Also delete all thread records")
@click.confirmation_option(prompt="Delete checkpoints?")
@click.pass_context
def clear(ctx, thread_id, threads_too):
    """Bulk-delete checkpoints (test / reset only)."""
    checkpoints, registry = _open(ctx)
    removed = checkpoints.clear(thread_id)
    click.echo(f"Removed {removed} checkpoint(s)")
    if threads_too:
        click.echo(f"Removed {registry.clear()} thread(s)")


if __name__ == "__main__":
    main()
