"""
Local adapter — a file-backed stand-in for a cloud provisioning API.

Resources are recorded in a JSON store (.state/local_cloud.json by
default) and receive deterministic ARN-style identifiers, so whole
compositions can be deployed, re-deployed and destroyed end to end on
a workstation or in CI without credentials.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from infracompose.adapters.base import ExecutionContext, ProvisioningAdapter
from infracompose.core.config.settings import ProviderSettings
from infracompose.core.errors import ProvisioningError
from infracompose.core.models.capability import CapabilityHandle
from infracompose.core.models.resource import REQUIRED_CONFIG, ResourceKind
from infracompose.core.persistence.manifest_file import write_json_atomic

logger = logging.getLogger(__name__)

DEFAULT_STORE_FILE = "local_cloud.json"

# Kinds that expose a network endpoint, with their default port
_ENDPOINT_PORTS: dict[ResourceKind, int] = {
    ResourceKind.DATABASE: 3306,
    ResourceKind.COMPUTE_INSTANCE: 22,
    ResourceKind.LOAD_BALANCER: 443,
}


class LocalAdapter(ProvisioningAdapter):
    """Provision resources into a local JSON store.

    Identifiers look like ``arn:local:<kind>:<region>:<account>:<stack>/<id>``.
    Applying an existing resource updates it in place, so repeated
    applies are harmless.
    """

    def __init__(self, store_path: Path):
        self._path = store_path

    @property
    def name(self) -> str:
        return "local"

    @property
    def store_path(self) -> Path:
        return self._path

    def is_available(self) -> bool:
        return True

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        empty = [
            key
            for key in REQUIRED_CONFIG[context.kind]
            if context.params.get(key) in (None, "", [])
        ]
        if empty:
            return False, f"required config resolved to nothing: {', '.join(empty)}"
        return True, ""

    def apply(self, context: ExecutionContext) -> CapabilityHandle:
        settings = context.settings
        identifier = self._identifier(context, settings)

        store = self._load()
        now = datetime.now(UTC).isoformat()
        previous = store.get(identifier)
        store[identifier] = {
            "stack": context.stack,
            "resource_id": context.resource_id,
            "kind": context.kind.value,
            "params": context.params,
            "created_at": previous["created_at"] if previous else now,
            "updated_at": now,
        }
        self._save(store)

        logger.debug("%s %s", "Updated" if previous else "Created", identifier)
        return CapabilityHandle(
            identifier=identifier,
            kind=context.kind.value,
            stack=context.stack,
            resource_id=context.resource_id,
            endpoint=self._endpoint(context, settings),
            attributes=self._attributes(context, identifier),
        )

    def destroy(self, handle: CapabilityHandle, settings: ProviderSettings) -> None:
        store = self._load()
        if store.pop(handle.identifier, None) is None:
            logger.debug("%s already gone", handle.identifier)
            return
        self._save(store)
        logger.debug("Deleted %s", handle.identifier)

    def list_resources(self) -> dict[str, dict[str, Any]]:
        """Everything currently in the store, keyed by identifier."""
        return self._load()

    # ── Internals ────────────────────────────────────────────────

    @staticmethod
    def _identifier(context: ExecutionContext, settings: ProviderSettings) -> str:
        region = settings.region or "local"
        account = settings.account or "000000000000"
        return f"arn:local:{context.kind.value}:{region}:{account}:{context.stack}/{context.resource_id}"

    @staticmethod
    def _endpoint(context: ExecutionContext, settings: ProviderSettings) -> str | None:
        port = _ENDPOINT_PORTS.get(context.kind)
        if port is None:
            return None
        port = int(context.params.get("port", port))
        host = f"{context.resource_id.lower()}.{context.stack.lower()}.{settings.region or 'local'}.internal"
        return f"{host}:{port}"

    @staticmethod
    def _attributes(context: ExecutionContext, identifier: str) -> dict[str, Any]:
        """Kind-specific extras consumers may depend on."""
        params = context.params
        attrs: dict[str, Any] = {}
        if context.kind == ResourceKind.DATABASE and params.get("generate_secret", True):
            attrs["secret_arn"] = identifier.replace(":database:", ":secret:") + "-credentials"
        if context.kind == ResourceKind.ARTIFACT_BUCKET:
            attrs["bucket_arn"] = identifier
            if params.get("encrypted"):
                attrs["encryption_key_arn"] = identifier.replace(":artifact_bucket:", ":key:")
        if context.kind == ResourceKind.EMAIL_IDENTITY:
            digest = hashlib.sha256(str(params["domain"]).encode("utf-8")).hexdigest()
            attrs["dkim_tokens"] = [digest[i * 16:(i + 1) * 16] for i in range(3)]
        if context.kind == ResourceKind.NETWORK:
            attrs["cidr"] = params["cidr"]
        return attrs

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self._path.is_file():
            return {}
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            raise ProvisioningError(f"Cannot read local store {self._path}: {e}") from e

    def _save(self, store: dict[str, dict[str, Any]]) -> None:
        try:
            write_json_atomic(self._path, store, prefix=".cloud_")
        except OSError as e:
            raise ProvisioningError(f"Cannot write local store {self._path}: {e}", retryable=True) from e
