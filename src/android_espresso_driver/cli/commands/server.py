"""Driver server lifecycle CLI commands."""

from __future__ import annotations

from typing import Any

import httpx
import typer

from android_espresso_driver.cli.daemon_client import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    DaemonController,
    format_json,
)

app = typer.Typer(help="Driver server lifecycle commands")


@app.command("start")
def server_start(
    host: str = typer.Option(DEFAULT_HOST, "--host", help="Address to listen on"),
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", help="Port to listen on"),
    log_level: str = typer.Option("info", "--log-level", help="uvicorn log level"),
) -> None:
    """Start the driver server in the background."""
    controller = DaemonController(host, port)
    status = controller.status()
    if status["pid_running"]:
        typer.echo(f"Server already running (pid {status['pid']})")
        return
    pid = controller.start(log_level=log_level)
    if pid == -1:
        typer.echo("Server already running (pid unknown)")
        return
    typer.echo(f"Server started (pid {pid}) on {controller.base_url}")


@app.command("stop")
def server_stop() -> None:
    """Stop the driver server."""
    controller = DaemonController()
    if controller.stop():
        typer.echo("Server stopped")
    else:
        typer.echo("Server not running")


@app.command("status")
def server_status(
    host: str = typer.Option(DEFAULT_HOST, "--host", help="Server address"),
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", help="Server port"),
) -> None:
    """Show driver server status."""
    controller = DaemonController(host, port)
    status = controller.status()

    health: dict[str, Any] | None = None
    try:
        resp = httpx.get(f"{controller.base_url}/status", timeout=2.0)
        health = resp.json()
    except (httpx.HTTPError, ValueError):
        health = None

    status["health"] = health
    typer.echo(format_json(status))
