"""Run a matching worker process.

Several of these may run at once against the same database; the queue's
atomic claim keeps them from processing the same job.
"""

import asyncio

import typer

from ai.llm_client import AnthropicProposalClient
from engine.db import AsyncSessionMaker, engine
from engine.logging_config import setup_logging
from engine.queue import JobQueue
from engine.worker import Worker, WorkerDependencies

app = typer.Typer(add_completion=False, help="Process queued matching jobs.")


async def run_worker(worker_id: str | None, once: bool, concurrency: int | None) -> None:
    deps = WorkerDependencies(
        session_factory=AsyncSessionMaker,
        queue=JobQueue(AsyncSessionMaker),
        model_client=AnthropicProposalClient(),
    )
    worker = Worker(deps, worker_id, concurrency=concurrency)
    try:
        if once:
            claimed = await worker.run_once()
            typer.echo(f"Processed {claimed} jobs")
        else:
            await worker.run_forever()
    finally:
        await engine.dispose()


@app.command()
def main(
    worker_id: str = typer.Option(None, help="Lock owner name (defaults to host:pid)"),
    once: bool = typer.Option(False, "--once", help="Process a single batch and exit"),
    concurrency: int = typer.Option(None, min=1, help="Jobs processed in parallel"),
) -> None:
    setup_logging()
    asyncio.run(run_worker(worker_id, once, concurrency))


if __name__ == "__main__":
    app()
