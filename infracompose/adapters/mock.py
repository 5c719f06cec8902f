"""
Mock adapter — universal test double for provisioning.

Used in mock mode and in tests to simulate a provisioning API without
touching one. Configurable to fail (retryably or not, a fixed number
of times) or to return custom handles per resource id.
"""

from __future__ import annotations

from infracompose.adapters.base import ExecutionContext, ProvisioningAdapter
from infracompose.core.config.settings import ProviderSettings
from infracompose.core.errors import ProvisioningError
from infracompose.core.models.capability import CapabilityHandle


class MockAdapter(ProvisioningAdapter):
    """Universal mock adapter for testing.

    By default, every apply succeeds with a fabricated handle. Failures
    are keyed by resource id.
    """

    def __init__(
        self,
        adapter_name: str = "mock",
        available: bool = True,
    ):
        self._name = adapter_name
        self._available = available
        self._responses: dict[str, CapabilityHandle] = {}
        self._failures: dict[str, tuple[str, bool, int | None]] = {}
        self._call_log: list[ExecutionContext] = []
        self._destroy_log: list[CapabilityHandle] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def call_log(self) -> list[ExecutionContext]:
        """All execution contexts this mock has received."""
        return self._call_log

    @property
    def call_count(self) -> int:
        """Number of times apply has been called."""
        return len(self._call_log)

    @property
    def applied_ids(self) -> list[str]:
        """Resource ids in the order apply saw them."""
        return [ctx.resource_id for ctx in self._call_log]

    @property
    def destroy_log(self) -> list[CapabilityHandle]:
        return self._destroy_log

    def is_available(self) -> bool:
        return self._available

    def set_response(self, resource_id: str, handle: CapabilityHandle) -> None:
        """Return a custom handle for a specific resource id."""
        self._responses[resource_id] = handle

    def set_failure(
        self,
        resource_id: str,
        error: str = "Mock failure",
        retryable: bool = False,
        times: int | None = None,
    ) -> None:
        """Make apply fail for a resource.

        Args:
            times: Fail this many times, then succeed. None = always fail.
        """
        self._failures[resource_id] = (error, retryable, times)

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        return True, ""

    def apply(self, context: ExecutionContext) -> CapabilityHandle:
        self._call_log.append(context)
        rid = context.resource_id

        if rid in self._failures:
            error, retryable, times = self._failures[rid]
            if times is None or times > 0:
                if times is not None:
                    self._failures[rid] = (error, retryable, times - 1)
                raise ProvisioningError(error, retryable=retryable, resource_id=rid)

        if rid in self._responses:
            return self._responses[rid]

        return CapabilityHandle(
            identifier=f"mock:{context.kind.value}:{context.stack}/{rid}",
            kind=context.kind.value,
            stack=context.stack,
            resource_id=rid,
            attributes={"mock": True},
        )

    def destroy(self, handle: CapabilityHandle, settings: ProviderSettings) -> None:
        self._destroy_log.append(handle)

    def reset(self) -> None:
        """Clear call logs and configured responses."""
        self._call_log.clear()
        self._destroy_log.clear()
        self._responses.clear()
        self._failures.clear()
