"""Tests for error model."""

from __future__ import annotations

from android_espresso_driver.errors import (
    SESSION_NOT_CREATED,
    TROUBLESHOOTING_HINT,
    DriverError,
    as_session_not_created,
    capability_validation_error,
    invalid_session_error,
    is_session_not_created,
    port_unavailable_error,
    server_request_error,
    session_not_created_error,
    unknown_command_error,
)


class TestDriverError:
    """Tests for DriverError."""

    def test_error_str(self) -> None:
        """Should format error as string."""
        error = DriverError(code="ERR_TEST", message="Test error", remediation="Fix it")

        assert str(error) == "[ERR_TEST] Test error"

    def test_error_to_dict(self) -> None:
        """Should convert to dict."""
        error = DriverError(
            code="ERR_TEST",
            message="Test error",
            context={"key": "value"},
            remediation="Fix it",
        )
        result = error.to_dict()

        assert result == {
            "code": "ERR_TEST",
            "message": "Test error",
            "context": {"key": "value"},
            "remediation": "Fix it",
        }

    def test_error_to_w3c(self) -> None:
        """Should wrap the error in the WebDriver payload shape."""
        error = invalid_session_error("abc")
        value = error.to_w3c()["value"]

        assert value["error"] == "invalid session id"
        assert value["message"] == error.message
        assert value["stacktrace"] == ""
        assert value["data"]["code"] == "ERR_INVALID_SESSION"
        assert error.status_code == 404


class TestSessionNotCreated:
    """Tests for the creation failure policy."""

    def test_existing_error_returned_as_is(self) -> None:
        """Should keep SessionNotCreated errors and append the hint once."""
        error = session_not_created_error("Remote refused")

        first = as_session_not_created(error)
        second = as_session_not_created(first)

        assert first is error
        assert second is error
        assert error.message.count(TROUBLESHOOTING_HINT) == 1

    def test_driver_error_is_wrapped(self) -> None:
        """Should wrap other errors and keep their code."""
        cause = port_unavailable_error(8300, 8399)

        error = as_session_not_created(cause)

        assert error is not cause
        assert error.code == SESSION_NOT_CREATED
        assert error.context["cause_code"] == "ERR_PORT_UNAVAILABLE"
        assert error.context["low"] == 8300
        assert error.message.startswith("No free port found in range 8300-8399.")
        assert error.w3c_error == "session not created"

    def test_plain_exception_is_wrapped(self) -> None:
        """Should wrap non-driver exceptions."""
        error = as_session_not_created(RuntimeError("boom"))

        assert is_session_not_created(error)
        assert error.context["cause_type"] == "RuntimeError"
        assert error.message.startswith("boom.")


class TestErrorConstructors:
    """Tests for error constructor functions."""

    def test_capability_error(self) -> None:
        """Should map to invalid argument."""
        error = capability_validation_error("bad caps", {"key": "app"})

        assert error.code == "ERR_INVALID_CAPABILITY"
        assert error.status_code == 400
        assert error.w3c_error == "invalid argument"
        assert error.context == {"key": "app"}

    def test_unknown_command(self) -> None:
        """Should map to unknown command."""
        error = unknown_command_error("GET", "/session/x/nothing")

        assert error.w3c_error == "unknown command"
        assert error.status_code == 404
        assert "/session/x/nothing" in error.message

    def test_server_request_status(self) -> None:
        """Should carry the given status code."""
        error = server_request_error("POST", "/session", "refused", 502)

        assert error.status_code == 502
        assert error.context["reason"] == "refused"
        assert "server" in error.remediation.lower()
