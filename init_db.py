"""Create the matching schema.

Run once before starting the API server or any worker.
"""

import asyncio

import typer

from engine.config import settings
from engine.db import engine
from engine.models import Base

app = typer.Typer(add_completion=False, help="Create the collaboration matching schema.")


async def init_database(reset: bool = False) -> None:
    """Create all database tables."""
    async with engine.begin() as conn:
        if reset:
            await conn.run_sync(Base.metadata.drop_all)
            typer.echo("Dropped existing tables")
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


@app.command()
def main(reset: bool = typer.Option(False, "--reset", help="Drop existing tables first")) -> None:
    typer.echo(f"Initializing database: {settings.db.url.split('@')[-1]}")
    try:
        asyncio.run(init_database(reset=reset))
    except Exception as e:
        typer.echo(f"Error initializing database: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Tables ready: {', '.join(Base.metadata.tables.keys())}")


if __name__ == "__main__":
    app()
