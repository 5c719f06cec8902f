"""
Adapter registry — central dispatch for all provisioning calls.

Every resource the engine provisions or tears down passes through here.
The registry picks the adapter that owns the resource kind, bounds the
call with the retry policy and timeout, and hands back a Receipt. Stacks
and the executor hold a registry, never an adapter.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from infracompose.adapters.base import ExecutionContext, ProvisioningAdapter
from infracompose.core.config.settings import ProviderSettings
from infracompose.core.errors import ProvisioningError
from infracompose.core.models.capability import CapabilityHandle
from infracompose.core.models.receipt import Receipt
from infracompose.core.models.resource import ResourceDescriptor, ResourceKind
from infracompose.core.reliability.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Adapters keyed by name, dispatched by resource kind.

    In mock mode every call goes to the mock adapter, or, when none was
    given, gets a fabricated ``mock:`` handle without touching any backend.
    """

    def __init__(
        self,
        settings: ProviderSettings | None = None,
        policy: RetryPolicy | None = None,
        mock_mode: bool = False,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self._adapters: dict[str, ProvisioningAdapter] = {}
        self._settings = settings or ProviderSettings()
        self._policy = policy or RetryPolicy()
        self._mock_mode = mock_mode
        self._mock_adapter: ProvisioningAdapter | None = None
        self._sleep = sleep

    @property
    def mock_mode(self) -> bool:
        return self._mock_mode

    @property
    def settings(self) -> ProviderSettings:
        return self._settings

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def set_mock_mode(self, enabled: bool, mock_adapter: ProvisioningAdapter | None = None) -> None:
        """Route all calls to ``mock_adapter`` (or fabricated handles) while enabled."""
        self._mock_mode = enabled
        self._mock_adapter = mock_adapter

    def register(self, adapter: ProvisioningAdapter) -> None:
        name = adapter.name
        if name in self._adapters:
            logger.warning("Adapter %s replaced by %s", name, type(adapter).__name__)
        self._adapters[name] = adapter
        logger.debug("Adapter %s handles %s", name, sorted(k.value for k in adapter.kinds) or "every kind")

    def unregister(self, name: str) -> None:
        self._adapters.pop(name, None)

    def get(self, name: str) -> ProvisioningAdapter | None:
        return self._adapters.get(name)

    def list_adapters(self) -> list[str]:
        return sorted(self._adapters)

    def adapter_for(self, kind: ResourceKind) -> ProvisioningAdapter | None:
        """The adapter that provisions this kind of resource.

        Adapters that declare the kind explicitly are preferred over
        catch-all adapters.
        """
        if self._mock_mode:
            return self._mock_adapter
        catch_all: ProvisioningAdapter | None = None
        for adapter in self._adapters.values():
            if not adapter.handles(kind):
                continue
            if adapter.kinds:
                return adapter
            if catch_all is None:
                catch_all = adapter
        return catch_all

    def adapter_status(self) -> dict[str, dict[str, Any]]:
        """Per adapter: whether its backend is reachable and which kinds it owns."""
        status = {}
        for name, adapter in self._adapters.items():
            try:
                available = adapter.is_available()
            except Exception:
                available = False
            status[name] = {
                "name": name,
                "available": available,
                "type": adapter.__class__.__name__,
                "kinds": sorted(k.value for k in adapter.kinds) or ["*"],
            }
        return status

    # ── Dispatch ─────────────────────────────────────────────────

    def apply(
        self,
        descriptor: ResourceDescriptor,
        stack: str,
        params: dict[str, Any] | None = None,
        dry_run: bool = False,
    ) -> Receipt:
        """Provision one resource through the appropriate adapter.

        ``params`` is the config with reference tokens already resolved.
        Validation failures, exhausted retries, timeouts and unexpected
        adapter exceptions all come back as failed receipts; nothing raises.
        """
        start_time = time.monotonic()

        context = ExecutionContext(
            descriptor=descriptor,
            stack=stack,
            params=descriptor.config_dict() if params is None else params,
            settings=self._settings,
            dry_run=dry_run,
        )

        adapter = self.adapter_for(descriptor.kind)
        if adapter is None and self._mock_mode:
            # Default mock behavior: fabricate a handle
            return Receipt.success(
                adapter="mock",
                resource_id=descriptor.id,
                stack=stack,
                handle=CapabilityHandle(
                    identifier=f"mock:{descriptor.kind.value}:{stack}/{descriptor.id}",
                    kind=descriptor.kind.value,
                    stack=stack,
                    resource_id=descriptor.id,
                ),
                output=f"[mock] {stack}/{descriptor.id} applied",
                metadata={"mock": True, "dry_run": dry_run},
            )

        if adapter is None:
            return Receipt.failure(
                adapter="none",
                resource_id=descriptor.id,
                stack=stack,
                error=f"No adapter registered for kind '{descriptor.kind.value}'",
            )

        # Validate
        try:
            is_valid, error_msg = adapter.validate(context)
        except Exception as e:
            is_valid, error_msg = False, f"validation raised: {e}"
        if not is_valid:
            return Receipt.failure(
                adapter=adapter.name,
                resource_id=descriptor.id,
                stack=stack,
                error=f"Validation failed: {error_msg}",
            )

        # Dry run: validated but not applied
        if dry_run:
            return Receipt.skip(
                adapter=adapter.name,
                resource_id=descriptor.id,
                stack=stack,
                reason=f"[dry-run] Would apply {stack}/{descriptor.id}",
                metadata={"dry_run": True},
            )

        label = f"{stack}/{descriptor.id}"
        try:
            handle, attempts = call_with_retry(
                lambda: adapter.apply(context),
                self._policy,
                label=label,
                sleep=self._sleep,
            )
            receipt = Receipt.success(
                adapter=adapter.name,
                resource_id=descriptor.id,
                stack=stack,
                handle=handle,
                output=handle.identifier,
                attempts=attempts,
            )
        except ProvisioningError as e:
            receipt = Receipt.failure(
                adapter=adapter.name,
                resource_id=descriptor.id,
                stack=stack,
                error=e.message,
                retryable=e.retryable,
                attempts=e.attempts,
            )
        except Exception as e:
            # Adapters should raise ProvisioningError; anything else still fails the call
            logger.error("Adapter %s raised during apply of %s: %s", adapter.name, label, e)
            receipt = Receipt.failure(
                adapter=adapter.name,
                resource_id=descriptor.id,
                stack=stack,
                error=f"Unexpected error: {e}",
            )

        return self._finish(receipt, start_time)

    def destroy(self, handle: CapabilityHandle, stack: str) -> Receipt:
        """Delete one materialized resource. Never raises."""
        start_time = time.monotonic()
        resource_id = handle.resource_id or handle.identifier

        try:
            kind = ResourceKind(handle.kind)
        except ValueError:
            kind = ResourceKind.CUSTOM

        adapter = self.adapter_for(kind)
        if adapter is None and self._mock_mode:
            return Receipt.success(
                adapter="mock",
                resource_id=resource_id,
                stack=stack,
                operation="destroy",
                output=f"[mock] {handle.identifier} destroyed",
                metadata={"mock": True},
            )
        if adapter is None:
            return Receipt.failure(
                adapter="none",
                resource_id=resource_id,
                stack=stack,
                operation="destroy",
                error=f"No adapter registered for kind '{kind.value}'",
            )

        try:
            _, attempts = call_with_retry(
                lambda: adapter.destroy(handle, self._settings),
                self._policy,
                label=f"destroy {stack}/{resource_id}",
                sleep=self._sleep,
            )
            receipt = Receipt.success(
                adapter=adapter.name,
                resource_id=resource_id,
                stack=stack,
                operation="destroy",
                output=f"destroyed {handle.identifier}",
                attempts=attempts,
            )
        except ProvisioningError as e:
            receipt = Receipt.failure(
                adapter=adapter.name,
                resource_id=resource_id,
                stack=stack,
                operation="destroy",
                error=e.message,
                retryable=e.retryable,
                attempts=e.attempts,
            )
        except Exception as e:
            logger.error("Adapter %s raised during destroy of %s: %s", adapter.name, resource_id, e)
            receipt = Receipt.failure(
                adapter=adapter.name,
                resource_id=resource_id,
                stack=stack,
                operation="destroy",
                error=f"Unexpected error: {e}",
            )

        return self._finish(receipt, start_time)

    @staticmethod
    def _finish(receipt: Receipt, start_time: float) -> Receipt:
        receipt.duration_ms = int((time.monotonic() - start_time) * 1000)
        receipt.ended_at = datetime.now(UTC).isoformat()
        return receipt
