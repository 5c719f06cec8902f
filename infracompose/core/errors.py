"""
Error taxonomy — everything the engine can refuse or fail with.

Composition errors are programming mistakes in the declared stacks:
they are fatal, never retried, and always carry the offending names.
ProvisioningError comes from the external provisioning API and is the
only error that may be retried.
"""

from __future__ import annotations


class CompositionError(Exception):
    """Base class for errors in the declared stack graph."""


class ValidationError(CompositionError):
    """A malformed resource descriptor or stack declaration."""


class DuplicateIdError(ValidationError):
    """A resource id was declared twice in the same stack."""

    def __init__(self, stack: str, resource_id: str):
        self.stack = stack
        self.resource_id = resource_id
        super().__init__(f"Stack '{stack}' already declares resource '{resource_id}'")


class DuplicateExportError(ValidationError):
    """An export name was declared twice in the same stack."""

    def __init__(self, stack: str, export: str):
        self.stack = stack
        self.export = export
        super().__init__(f"Stack '{stack}' already exports '{export}'")


class AlreadyPublishedError(CompositionError):
    """A capability was published twice in one deployment run."""

    def __init__(self, stack: str, export: str):
        self.stack = stack
        self.export = export
        super().__init__(f"Capability '{stack}.{export}' is already published")


class UnresolvedImportError(CompositionError):
    """A capability was resolved before its exporting stack published it."""

    def __init__(self, stack: str, export: str):
        self.stack = stack
        self.export = export
        super().__init__(
            f"Capability '{stack}.{export}' has not been published "
            f"(stack '{stack}' is not materialized)"
        )


class CyclicDependencyError(CompositionError):
    """The stack import graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__("Cyclic stack dependency: " + " -> ".join(cycle))


class ProvisioningError(Exception):
    """A failure reported by the provisioning API.

    Attributes:
        retryable: Whether the call is safe to retry.
        resource_id: The resource being provisioned, when known.
        attempts: How many calls were made before giving up.
        handles: Handles materialized before the failure (set when a
            stack's materialization is cut short).
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        resource_id: str | None = None,
    ):
        self.message = message
        self.retryable = retryable
        self.resource_id = resource_id
        self.attempts = 1
        self.handles: dict = {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.resource_id:
            return f"{self.resource_id}: {self.message}"
        return self.message


# ── CLI exit codes ──────────────────────────────────────────────────

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_VALIDATION = 3
EXIT_CYCLE = 4
EXIT_PROVISIONING = 5
EXIT_COMPOSITION = 6
EXIT_CANCELLED = 130


def exit_code_for(error: BaseException) -> int:
    """Map an error to the process exit code the CLI reports."""
    if isinstance(error, CyclicDependencyError):
        return EXIT_CYCLE
    if isinstance(error, ValidationError):
        return EXIT_VALIDATION
    if isinstance(error, CompositionError):
        return EXIT_COMPOSITION
    if isinstance(error, ProvisioningError):
        return EXIT_PROVISIONING
    return EXIT_CONFIG
