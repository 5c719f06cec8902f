"""
Capability registry — write-once exchange of handles between stacks.

Lives for one deployment run. An exporting stack publishes each of its
exports exactly once after it materializes; importing stacks resolve
them by (stack, export). Resolving before publish is an error: the
dependency resolver exists to make that impossible, this check is the
backstop. Sequential use only.
"""

from __future__ import annotations

import logging

from infracompose.core.errors import AlreadyPublishedError, UnresolvedImportError
from infracompose.core.models.capability import CapabilityHandle

logger = logging.getLogger(__name__)


class CapabilityRegistry:
    """Maps (stack, export) to a published capability.

    A published value of None means the capability is known to be
    absent (an optional export whose resource does not exist).
    """

    def __init__(self) -> None:
        self._published: dict[tuple[str, str], CapabilityHandle | None] = {}

    def publish(self, stack: str, export: str, handle: CapabilityHandle | None) -> None:
        """Publish a capability. Each (stack, export) pair is written once."""
        key = (stack, export)
        if key in self._published:
            raise AlreadyPublishedError(stack, export)
        self._published[key] = handle
        logger.debug(
            "Published %s.%s → %s",
            stack,
            export,
            handle.identifier if handle else "<absent>",
        )

    def resolve(self, stack: str, export: str) -> CapabilityHandle | None:
        """Return the published capability (None when absent).

        Raises:
            UnresolvedImportError: Nothing was published for this pair yet.
        """
        key = (stack, export)
        if key not in self._published:
            raise UnresolvedImportError(stack, export)
        return self._published[key]

    def is_published(self, stack: str, export: str) -> bool:
        return (stack, export) in self._published

    def published(self) -> dict[str, CapabilityHandle | None]:
        """Snapshot keyed by 'stack.export'."""
        return {f"{s}.{e}": h for (s, e), h in self._published.items()}

    def __len__(self) -> int:
        return len(self._published)
