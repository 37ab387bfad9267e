"""CLI entry point for claude-run."""

import logging
import os
import threading
import webbrowser

import click
import uvicorn


@click.group()
def main():
    """Browse Claude Code conversation logs in a local web viewer."""
    pass


@main.command()
@click.option("--port", default=12001, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option(
    "--dir", "claude_dir",
    type=click.Path(file_okay=False, path_type=str),
    default=None,
    help="Claude directory to read (default: ~/.claude).",
)
@click.option("--no-watch", is_flag=True, help="Disable live updates from the filesystem.")
@click.option("--open/--no-open", "open_browser", default=False, help="Open a browser tab.")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="info",
    help="Logging verbosity.",
)
def serve(port: int, host: str, claude_dir: str | None, no_watch: bool, open_browser: bool, log_level: str):
    """Start the web interface."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # The app reads its settings from the environment when it first loads.
    if claude_dir:
        os.environ["CLAUDE_RUN_DIR"] = claude_dir
    if no_watch:
        os.environ["CLAUDE_RUN_WATCH"] = "0"

    url = f"http://{host}:{port}"
    click.echo(f"Starting claude-run on {url}")
    if open_browser:
        threading.Timer(1.5, webbrowser.open, args=(url,)).start()
    uvicorn.run("claude_run.server:app", host=host, port=port, reload=False, log_level=log_level)
