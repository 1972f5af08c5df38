"""Driver server control and HTTP client for CLI commands."""

from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any

import httpx

from android_espresso_driver.db.models import STATE_DIR

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4723
PID_FILE = STATE_DIR / "server.pid"
LOG_FILE = STATE_DIR / "server.log"


class DaemonController:
    """Start/stop/status for the background driver server."""

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
        self.host = host
        self.port = port
        self.base_url = f"http://{host}:{port}"
        STATE_DIR.mkdir(parents=True, exist_ok=True)

    def _pid_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except OSError:
            return False
        return True

    def _read_pid(self) -> int | None:
        if not PID_FILE.exists():
            return None
        try:
            return int(PID_FILE.read_text().strip())
        except ValueError:
            return None

    def health(self) -> bool:
        """Return True if the server answers /status."""
        try:
            resp = httpx.get(f"{self.base_url}/status", timeout=1.0)
        except httpx.HTTPError:
            return False
        return resp.status_code == 200

    def start(self, log_level: str = "info") -> int:
        """Start the server; returns PID, or -1 if already running but PID unknown."""
        pid = self._read_pid()
        if pid and self._pid_running(pid):
            return pid
        if pid:
            PID_FILE.unlink(missing_ok=True)
        if self.health():
            return -1

        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        args = [
            sys.executable,
            "-m",
            "uvicorn",
            "android_espresso_driver.daemon.server:app",
            "--host",
            self.host,
            "--port",
            str(self.port),
            "--log-level",
            log_level,
        ]
        with LOG_FILE.open("a", encoding="utf-8") as log_handle:
            proc = subprocess.Popen(
                args,
                stdout=log_handle,
                stderr=log_handle,
                start_new_session=True,
            )
        PID_FILE.write_text(str(proc.pid))
        return proc.pid

    def stop(self) -> bool:
        """Stop the server if running."""
        pid = self._read_pid()
        if not pid:
            return False
        if not self._pid_running(pid):
            PID_FILE.unlink(missing_ok=True)
            return False

        os.kill(pid, signal.SIGTERM)
        # Session teardown runs on shutdown, so allow more than a moment.
        for _ in range(100):
            if not self._pid_running(pid):
                PID_FILE.unlink(missing_ok=True)
                return True
            time.sleep(0.1)
        return False

    def status(self) -> dict[str, Any]:
        """Return server status summary."""
        pid = self._read_pid()
        return {
            "pid": pid,
            "pid_running": self._pid_running(pid) if pid else False,
            "url": self.base_url,
            "log_file": str(LOG_FILE),
        }


class DaemonClient:
    """HTTP client for the driver server."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        *,
        auto_start: bool = True,
        timeout: float = 600.0,
    ) -> None:
        self.auto_start = auto_start
        self.controller = DaemonController(host, port)
        self._client = httpx.Client(base_url=self.controller.base_url, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def request(
        self, method: str, path: str, json_body: dict[str, Any] | None = None
    ) -> httpx.Response:
        if self.auto_start:
            self._ensure_ready()
        return self._client.request(method, path, json=json_body)

    def _ensure_ready(self) -> None:
        if self.controller.health():
            return
        self.controller.start()
        self._wait_for_health()

    def _wait_for_health(self) -> None:
        deadline = time.time() + 10
        while time.time() < deadline:
            if self.controller.health():
                return
            time.sleep(0.1)
        raise RuntimeError("Driver server did not become healthy in time")


def format_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=True)
