"""Command line entry point."""

from pathlib import Path
from typing import Optional

import typer
import uvicorn

from minion.app.config import settings
from minion.app.main import create_app

app = typer.Typer(help="Minion - concurrent coding agents in isolated git worktrees")


@app.command()
def serve(
    port: Optional[int] = typer.Option(
        None, "--port", "-p", help=f"Port to run the web server on (default: {settings.port})"
    ),
    repo: Optional[Path] = typer.Option(
        None, "--repo", "-r", help="Path to git repository (default: current directory)"
    ),
    host: Optional[str] = typer.Option(
        None, "--host", help=f"Interface to bind (default: {settings.host})"
    ),
) -> None:
    """Start the minion server."""
    overrides = {}
    if port is not None:
        overrides["port"] = port
    if repo is not None:
        overrides["repo_path"] = repo
    if host is not None:
        overrides["host"] = host
    config = settings.model_copy(update=overrides)

    typer.echo(f"Starting minion on http://{config.host}:{config.port} (repo: {config.repo_path})")
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    app()
