"""
Adapter base — the contract between the engine and a provisioning API.

The engine only talks to provisioning backends through this protocol.
Adapters turn a resource descriptor (with its config already resolved)
into a live CapabilityHandle, or raise ProvisioningError saying whether
the call may be retried. The AdapterRegistry converts both outcomes
into Receipts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from pydantic import BaseModel, Field

from infracompose.core.config.settings import ProviderSettings
from infracompose.core.models.capability import CapabilityHandle
from infracompose.core.models.resource import ResourceDescriptor, ResourceKind


class ExecutionContext(BaseModel):
    """Everything an adapter needs to provision one resource."""

    descriptor: ResourceDescriptor
    stack: str
    params: dict[str, Any] = Field(default_factory=dict)   # config with references resolved
    settings: ProviderSettings = Field(default_factory=ProviderSettings)
    dry_run: bool = False

    @property
    def resource_id(self) -> str:
        return self.descriptor.id

    @property
    def kind(self) -> ResourceKind:
        return self.descriptor.kind


class ProvisioningAdapter(ABC):
    """Abstract base class for provisioning backends.

    To create a new adapter:
        1. Subclass ProvisioningAdapter
        2. Implement name, is_available, validate, apply, destroy
        3. Optionally restrict ``kinds`` to the resource kinds it owns
        4. Register it in the AdapterRegistry

    ``apply`` must be safe to call again for the same resource: the
    registry retries it after retryable failures, and re-deploys call
    it for changed resources.
    """

    kinds: ClassVar[frozenset[ResourceKind]] = frozenset()   # empty = every kind

    @property
    @abstractmethod
    def name(self) -> str:
        """The adapter identifier (e.g., 'local', 'mock')."""

    def handles(self, kind: ResourceKind) -> bool:
        """Whether this adapter provisions resources of this kind."""
        return not self.kinds or kind in self.kinds

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the backing API is reachable. Fast, never raises."""

    @abstractmethod
    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        """Validate the resolved config before any call is made.

        Returns:
            (is_valid, error_message). error_message is empty if valid.
        """

    @abstractmethod
    def apply(self, context: ExecutionContext) -> CapabilityHandle:
        """Create or update the resource and return its handle.

        Raises:
            ProvisioningError: With ``retryable`` set when the call may
                be repeated safely.
        """

    @abstractmethod
    def destroy(self, handle: CapabilityHandle, settings: ProviderSettings) -> None:
        """Delete a previously materialized resource.

        Deleting something that no longer exists is not an error.

        Raises:
            ProvisioningError: When the resource could not be deleted.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
