"""
Receipt model — the outcome of one provisioning call.

The adapter registry turns every apply/destroy into a Receipt, so the
engine sees a uniform result whether the adapter succeeded, was
skipped, or raised a ProvisioningError.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from infracompose.core.models.capability import CapabilityHandle


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Receipt(BaseModel):
    """Result of provisioning (or destroying) one resource."""

    adapter: str
    resource_id: str
    stack: str = ""
    operation: Literal["apply", "destroy"] = "apply"
    status: Literal["ok", "skipped", "failed"] = "ok"

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0
    attempts: int = 1

    handle: CapabilityHandle | None = None
    output: str = ""
    error: str | None = None
    retryable: bool = False

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether the call succeeded."""
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        """Whether the call failed."""
        return self.status == "failed"

    @classmethod
    def success(
        cls,
        adapter: str,
        resource_id: str,
        handle: CapabilityHandle | None = None,
        output: str = "",
        **kwargs: Any,
    ) -> Receipt:
        """Create a success receipt."""
        return cls(
            adapter=adapter,
            resource_id=resource_id,
            status="ok",
            handle=handle,
            output=output,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        adapter: str,
        resource_id: str,
        error: str,
        retryable: bool = False,
        **kwargs: Any,
    ) -> Receipt:
        """Create a failure receipt."""
        return cls(
            adapter=adapter,
            resource_id=resource_id,
            status="failed",
            error=error,
            retryable=retryable,
            **kwargs,
        )

    @classmethod
    def skip(
        cls,
        adapter: str,
        resource_id: str,
        reason: str = "",
        **kwargs: Any,
    ) -> Receipt:
        """Create a skip receipt."""
        return cls(
            adapter=adapter,
            resource_id=resource_id,
            status="skipped",
            output=reason,
            **kwargs,
        )
