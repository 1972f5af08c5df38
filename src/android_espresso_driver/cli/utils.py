"""Shared CLI helpers."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, cast

import typer

from android_espresso_driver.cli.daemon_client import format_json


def _parse_response_json(resp: Any) -> dict[str, Any]:
    try:
        return cast(dict[str, Any], resp.json())
    except ValueError as exc:
        typer.echo("Failed to parse response")
        raise typer.Exit(code=1) from exc


def _maybe_render_error(data: dict[str, Any]) -> None:
    value = data.get("value") if isinstance(data, dict) else None
    if not (isinstance(value, dict) and value.get("error")):
        return
    details = value.get("data") or {}
    code = details.get("code") or value["error"]
    typer.echo(f"{code}: {value.get('message')}")
    remediation = details.get("remediation")
    if remediation:
        typer.echo(f"Hint: {remediation}")
    raise typer.Exit(code=1)


def handle_response(resp: Any, json_output: bool = False) -> None:
    data = _parse_response_json(resp)
    if json_output:
        typer.echo(format_json(data))
        return

    _maybe_render_error(data)
    typer.echo(format_json(data.get("value", data)))


def parse_cap(raw: str) -> tuple[str, Any]:
    """Parse ``key=value``; the value is read as JSON when it parses, else as text."""
    key, sep, value = raw.partition("=")
    if not sep or not key:
        raise typer.BadParameter(f"Expected key=value, got '{raw}'")
    try:
        return key, json.loads(value)
    except ValueError:
        return key, value


def load_capabilities(caps_file: Path | None, caps: list[str] | None) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    if caps_file is not None:
        try:
            loaded = json.loads(caps_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise typer.BadParameter(f"Cannot read capabilities from {caps_file}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise typer.BadParameter("Capabilities file must hold a JSON object")
        merged.update(loaded)
    for raw in caps or []:
        key, value = parse_cap(raw)
        merged[key] = value
    return merged
