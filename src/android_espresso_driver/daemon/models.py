"""Pydantic request models for daemon endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator


class NewSessionRequest(BaseModel):
    """Body of ``POST /session`` in either W3C or legacy JSONWP shape."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    capabilities: dict[str, Any] | None = None
    desired_capabilities: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_key(cls, data: Any) -> Any:
        """Map ``desiredCapabilities`` onto the snake_case field."""
        if isinstance(data, dict) and "desiredCapabilities" in data:
            data = dict(data)
            data["desired_capabilities"] = data.pop("desiredCapabilities")
        return data

    def payload(self) -> dict[str, Any]:
        if self.capabilities is not None:
            return {"capabilities": self.capabilities}
        return {"desiredCapabilities": self.desired_capabilities or {}}
