"""Session context - the single-owner state record of one session."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from android_espresso_driver.session.options import SessionOptions
from android_espresso_driver.validation import is_package_or_bundle

if TYPE_CHECKING:
    from android_espresso_driver.device.manager import AndroidDevice, ScreenRecording
    from android_espresso_driver.interfaces import StoppableHandle, WebviewEngine
    from android_espresso_driver.server.espresso import EspressoServer

NATIVE_CONTEXT = "NATIVE_APP"
WEBVIEW_PREFIX = "WEBVIEW_"


class SessionState(Enum):
    """Orchestrator lifecycle states."""

    IDLE = "idle"
    CREATING = "creating"
    ACTIVE = "active"
    DELETING = "deleting"


@dataclass
class SessionContext:
    """Everything one session owns; never shared between orchestrators."""

    session_id: str
    opts: SessionOptions = field(default_factory=SessionOptions)
    caps: dict[str, Any] = field(default_factory=dict)
    current_context: str = NATIVE_CONTEXT
    device: AndroidDevice | None = None
    server: EspressoServer | None = None
    webview_engine: WebviewEngine | None = None
    proxy_active: bool = False
    system_port: int | None = None
    created_at: datetime = field(default_factory=datetime.now)

    # Startup actions to undo on teardown
    was_animation_enabled: bool = False
    default_ime: str | None = None
    emulator_booted: bool = False

    # Background handles
    screen_recording: ScreenRecording | None = None
    screen_streaming: StoppableHandle | None = None
    timeouts: dict[str, int] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)

    @property
    def is_webview(self) -> bool:
        return self.current_context != NATIVE_CONTEXT

    @property
    def app_on_device(self) -> bool:
        """True when no app file was given and the package is expected on the device."""
        return not self.opts.app and is_package_or_bundle(self.opts.app_package)

    def default_webview_name(self) -> str:
        return f"{WEBVIEW_PREFIX}{self.opts.app_package}"
