"""Error model - Actionable errors with remediation hints and W3C mapping."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SESSION_NOT_CREATED = "ERR_SESSION_NOT_CREATED"

TROUBLESHOOTING_HINT = (
    "Check the driver troubleshooting guide regarding advanced session startup troubleshooting."
)


@dataclass
class DriverError(Exception):
    """
    Base error with context and remediation guidance.

    All errors should be actionable - tell the caller what went wrong
    and what they can do about it. ``w3c_error`` and ``status_code`` decide
    how the error is reported over the WebDriver wire protocol.
    """

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    remediation: str = ""
    w3c_error: str = "unknown error"
    status_code: int = 500

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "remediation": self.remediation,
        }

    def to_w3c(self) -> dict[str, Any]:
        """Convert to a W3C WebDriver error payload."""
        return {
            "value": {
                "error": self.w3c_error,
                "message": self.message,
                "stacktrace": "",
                "data": self.to_dict(),
            }
        }


def is_session_not_created(error: BaseException) -> bool:
    return isinstance(error, DriverError) and error.code == SESSION_NOT_CREATED


def _with_hint(message: str) -> str:
    if message.endswith(TROUBLESHOOTING_HINT):
        return message
    separator = "" if message.endswith(".") else "."
    return f"{message}{separator} {TROUBLESHOOTING_HINT}"


def as_session_not_created(error: BaseException) -> DriverError:
    """Convert a creation failure into a single SessionNotCreated error.

    An error that already is SessionNotCreated is returned as-is (hint appended
    once); anything else is wrapped, keeping the original code in the context.
    """
    if isinstance(error, DriverError) and is_session_not_created(error):
        error.message = _with_hint(error.message)
        return error

    if isinstance(error, DriverError):
        context = {"cause_code": error.code, **error.context}
        message = error.message
        remediation = error.remediation
    else:
        context = {"cause_type": type(error).__name__}
        message = str(error) or type(error).__name__
        remediation = ""
    return session_not_created_error(_with_hint(message), context, remediation)


# Specific error constructors for common cases


def session_not_created_error(
    message: str,
    context: dict[str, Any] | None = None,
    remediation: str = "",
) -> DriverError:
    """Create error for a failed session creation."""
    return DriverError(
        code=SESSION_NOT_CREATED,
        message=message,
        context=context or {},
        remediation=remediation or "Inspect the driver log for the failing startup step.",
        w3c_error="session not created",
        status_code=500,
    )


def capability_validation_error(message: str, context: dict[str, Any] | None = None) -> DriverError:
    """Create error for capabilities rejected before any device interaction."""
    return DriverError(
        code="ERR_INVALID_CAPABILITY",
        message=message,
        context=context or {},
        remediation="Fix the session capabilities and request a new session.",
        w3c_error="invalid argument",
        status_code=400,
    )


def invalid_argument_error(message: str, context: dict[str, Any] | None = None) -> DriverError:
    """Create error for a malformed command payload."""
    return DriverError(
        code="ERR_INVALID_ARGUMENT",
        message=message,
        context=context or {},
        remediation="Send a JSON object body matching the command parameters.",
        w3c_error="invalid argument",
        status_code=400,
    )


def no_supported_package_error(app: str, extensions: tuple[str, ...]) -> DriverError:
    """Create error for an archive without any installable package."""
    return DriverError(
        code="ERR_NO_SUPPORTED_PACKAGE",
        message=(
            f"{app} did not have any of '{', '.join(extensions)}' extension packages. "
            "Please make sure the provided .zip archive contains at least one valid "
            "application package."
        ),
        context={"app": app, "extensions": list(extensions)},
        remediation="Point the 'app' capability to an .apk, an .aab or a zip containing one.",
    )


def signing_failed_error(path: str, reason: str) -> DriverError:
    """Create error for an application package that could not be signed."""
    return DriverError(
        code="ERR_SIGNING_FAILED",
        message=f"Failed to sign '{path}': {reason}",
        context={"path": path, "reason": reason},
        remediation=(
            "Check apksigner and the keystore capabilities, or set 'noSign' if the "
            "package is already signed properly."
        ),
    )


def port_unavailable_error(low: int, high: int) -> DriverError:
    """Create error for an exhausted port range."""
    return DriverError(
        code="ERR_PORT_UNAVAILABLE",
        message=f"No free port found in range {low}-{high}",
        context={"low": low, "high": high},
        remediation="Free a port in the range or pass an explicit 'systemPort' capability.",
    )


def device_unavailable_error(udid: str | None, reason: str) -> DriverError:
    """Create error for a device that cannot be selected or reached."""
    return DriverError(
        code="ERR_DEVICE_UNAVAILABLE",
        message=f"Device unavailable ({udid or 'any'}): {reason}",
        context={"udid": udid, "reason": reason},
        remediation="Check connected devices with 'adb devices' and the 'udid' capability.",
    )


def activity_wait_timeout_error(package: str, activity: str, timeout_ms: int) -> DriverError:
    """Create error for an activity that never came to the foreground."""
    return DriverError(
        code="ERR_ACTIVITY_WAIT_TIMEOUT",
        message=f"{package}/{activity} never started within {timeout_ms}ms",
        context={"package": package, "activity": activity, "timeout_ms": timeout_ms},
        remediation=(
            "Verify 'appWaitActivity'/'appWaitPackage' or increase 'appWaitDuration'."
        ),
        w3c_error="timeout",
    )


def package_not_installed_error(package: str) -> DriverError:
    """Create error for a package expected on the device but missing."""
    return DriverError(
        code="ERR_PACKAGE_NOT_INSTALLED",
        message=f"Could not find the package '{package}' installed on the device",
        context={"package": package},
        remediation="Install the package first or provide the 'app' capability.",
    )


def invalid_session_error(session_id: str) -> DriverError:
    """Create error for an unknown session id."""
    return DriverError(
        code="ERR_INVALID_SESSION",
        message=f"A session is either terminated or not started: {session_id}",
        context={"session_id": session_id},
        remediation="Create a new session with POST /session.",
        w3c_error="invalid session id",
        status_code=404,
    )


def unknown_command_error(method: str, path: str) -> DriverError:
    """Create error for a command without a local handler."""
    return DriverError(
        code="ERR_UNKNOWN_COMMAND",
        message=f"The requested resource could not be found: {method} {path}",
        context={"method": method, "path": path},
        remediation="Check the command is supported by this driver.",
        w3c_error="unknown command",
        status_code=404,
    )


def no_such_context_error(name: str) -> DriverError:
    """Create error for a context that cannot be entered."""
    return DriverError(
        code="ERR_NO_SUCH_CONTEXT",
        message=f"No such context found: {name}",
        context={"context": name},
        remediation="List available contexts with GET /session/:id/contexts.",
        w3c_error="no such context",
        status_code=404,
    )


def proxy_inactive_error(session_id: str | None) -> DriverError:
    """Create error for a forward attempted before the on-device server is ready."""
    return DriverError(
        code="ERR_PROXY_INACTIVE",
        message="The on-device server is not ready to accept commands",
        context={"session_id": session_id},
        remediation="Wait for session creation to finish before sending commands.",
    )


def app_not_found_error(path: str) -> DriverError:
    """Create error for a missing local app file."""
    return DriverError(
        code="ERR_APP_NOT_FOUND",
        message=f"App file not found: {path}",
        context={"path": path},
        remediation="Verify the 'app' capability points to an existing file or URL.",
    )


def app_download_error(url: str, reason: str) -> DriverError:
    """Create error for a failed app download."""
    return DriverError(
        code="ERR_APP_DOWNLOAD",
        message=f"Failed to download app from {url}: {reason}",
        context={"url": url, "reason": reason},
        remediation="Check the URL is reachable from the driver host.",
    )


def app_extraction_error(path: str, reason: str) -> DriverError:
    """Create error for an archive that cannot be unpacked."""
    return DriverError(
        code="ERR_APP_EXTRACTION",
        message=f"Failed to extract '{path}': {reason}",
        context={"path": path, "reason": reason},
        remediation="Make sure the archive is a valid zip file.",
    )


def tool_not_found_error(tool: str) -> DriverError:
    """Create error for a missing Android SDK tool."""
    return DriverError(
        code="ERR_TOOL_NOT_FOUND",
        message=f"{tool} command not found",
        context={"tool": tool},
        remediation="Install the Android SDK build-tools and set ANDROID_HOME.",
    )


def tool_command_error(tool: str, reason: str) -> DriverError:
    """Create error for a failing Android SDK tool invocation."""
    return DriverError(
        code="ERR_TOOL_COMMAND",
        message=f"{tool} failed: {reason}",
        context={"tool": tool, "reason": reason},
        remediation="Run the command manually to inspect its output.",
    )


def adb_not_found_error() -> DriverError:
    """Create error for missing adb binary."""
    return DriverError(
        code="ERR_ADB_NOT_FOUND",
        message="adb command not found",
        context={},
        remediation="Install Android platform-tools and ensure adb is in PATH.",
    )


def adb_command_error(command: str, reason: str) -> DriverError:
    """Create error for adb command failure."""
    return DriverError(
        code="ERR_ADB_COMMAND",
        message=f"adb command failed: {command}",
        context={"command": command, "reason": reason},
        remediation="Check adb connection and command arguments, then retry.",
    )


def emulator_launch_error(avd: str, reason: str) -> DriverError:
    """Create error for an emulator that did not boot."""
    return DriverError(
        code="ERR_EMULATOR_LAUNCH",
        message=f"Emulator '{avd}' failed to boot: {reason}",
        context={"avd": avd, "reason": reason},
        remediation="Check the AVD exists with 'emulator -list-avds' and increase the timeout.",
    )


def server_not_ready_error(url: str, timeout_ms: int) -> DriverError:
    """Create error for an on-device server that never answered /status."""
    return DriverError(
        code="ERR_SERVER_NOT_READY",
        message=f"On-device server at {url} was not ready within {timeout_ms}ms",
        context={"url": url, "timeout_ms": timeout_ms},
        remediation="Increase 'espressoServerLaunchTimeout' or check the instrumentation log.",
    )


def server_apk_not_found_error(path: str | None) -> DriverError:
    """Create error for a missing prebuilt on-device server package."""
    return DriverError(
        code="ERR_SERVER_APK_NOT_FOUND",
        message=f"On-device server package not found: {path or '<not set>'}",
        context={"path": path},
        remediation=(
            "Set the 'espressoServerApk' capability or the ESPRESSO_SERVER_APK "
            "environment variable to a prebuilt server .apk."
        ),
    )


def server_request_error(
    method: str, path: str, reason: str, status_code: int = 500
) -> DriverError:
    """Create error for a failed on-device server request."""
    return DriverError(
        code="ERR_SERVER_REQUEST",
        message=f"On-device server request {method} {path} failed: {reason}",
        context={"method": method, "path": path, "reason": reason},
        remediation="Check the on-device server is still running.",
        status_code=status_code,
    )
