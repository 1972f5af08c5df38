"""Session management CLI commands."""

from __future__ import annotations

from pathlib import Path

import typer

from android_espresso_driver.cli.daemon_client import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    DaemonClient,
    format_json,
)
from android_espresso_driver.cli.utils import handle_response, load_capabilities

app = typer.Typer(help="Session management commands")


@app.command("create")
def session_create(
    caps_file: Path | None = typer.Option(
        None, "--caps-file", "-f", help="JSON file holding the capabilities"
    ),
    cap: list[str] | None = typer.Option(
        None, "--cap", "-c", help="Capability as key=value (repeatable)"
    ),
    host: str = typer.Option(DEFAULT_HOST, "--host", help="Server address"),
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", help="Server port"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Create a new session and print its id."""
    caps = load_capabilities(caps_file, cap)
    body = {"capabilities": {"alwaysMatch": caps, "firstMatch": [{}]}}
    client = DaemonClient(host, port)
    resp = client.request("POST", "/session", json_body=body)
    client.close()

    data = resp.json()
    if json_output:
        typer.echo(format_json(data))
        return

    value = data.get("value") or {}
    if resp.status_code == 200 and value.get("sessionId"):
        typer.echo(value["sessionId"])
        return

    handle_response(resp, json_output=json_output)


@app.command("delete")
def session_delete(
    session_id: str = typer.Argument(..., help="Session ID"),
    host: str = typer.Option(DEFAULT_HOST, "--host", help="Server address"),
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", help="Server port"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Delete a session."""
    client = DaemonClient(host, port, auto_start=False)
    resp = client.request("DELETE", f"/session/{session_id}")
    client.close()
    handle_response(resp, json_output=json_output)


@app.command("list")
def session_list(
    host: str = typer.Option(DEFAULT_HOST, "--host", help="Server address"),
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", help="Server port"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """List active sessions."""
    client = DaemonClient(host, port, auto_start=False)
    resp = client.request("GET", "/sessions")
    client.close()
    handle_response(resp, json_output=json_output)
