"""Scheduled sweep: enqueue every eligible pair for matching.

Meant to be run periodically (cron, a scheduled container task). It only
enqueues; workers do the evaluation.
"""

import asyncio
import logging

import typer

from engine.db import AsyncSessionMaker, engine
from engine.logging_config import setup_logging
from engine.pipelines.triggers import enqueue_scheduled_sweep
from engine.queue import JobQueue

logger = logging.getLogger("trigger_matching")

app = typer.Typer(add_completion=False, help="Enqueue a matching sweep over all eligible pairs.")


async def sweep() -> int:
    queue = JobQueue(AsyncSessionMaker)
    try:
        async with AsyncSessionMaker() as session:
            return await enqueue_scheduled_sweep(session, queue)
    finally:
        await engine.dispose()


@app.command()
def main() -> None:
    setup_logging()
    try:
        enqueued = asyncio.run(sweep())
    except Exception as e:
        logger.error(f"Scheduled sweep failed: {e}", exc_info=True)
        raise typer.Exit(code=1)
    typer.echo(f"Enqueued {enqueued} run_matching jobs")


if __name__ == "__main__":
    app()
