import logging
import os

import click
import uvicorn

from open_workbench import env


@click.group()
def main():
    """Open Workbench: remote project workspaces with command execution."""


@main.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address.")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port.")
@click.option(
    "--api-key",
    default=env.API_KEY,
    help="Bearer key required by every endpoint except /health.",
)
@click.option(
    "--projects-dir",
    default=env.PROJECTS_DIR,
    show_default=True,
    type=click.Path(file_okay=False),
    help="Root directory holding one subdirectory per project.",
)
@click.option(
    "--timeout",
    default=env.EXECUTION_TIMEOUT,
    show_default=True,
    type=float,
    help="Seconds after which a running command is killed.",
)
@click.option(
    "--log-level",
    default=env.LOG_LEVEL,
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
def run(host, port, api_key, projects_dir, timeout, log_level):
    """Start the API server."""
    from open_workbench.main import create_app

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    projects_dir = os.path.abspath(projects_dir)
    os.makedirs(projects_dir, exist_ok=True)

    app = create_app(
        projects_dir=projects_dir, execution_timeout=timeout, api_key=api_key
    )
    click.echo(f"Open Workbench listening on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=log_level.lower())


if __name__ == "__main__":
    main()
