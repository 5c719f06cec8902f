"""
Resource descriptors — immutable descriptions of desired resources.

A descriptor says what kind of resource is wanted, how it is
configured, and which resources of the same stack it depends on.
Config strings may embed reference tokens that are substituted at
materialization time:

    ${ref:vpc}                    handle of resource 'vpc' in this stack
    ${ref:db.endpoint}            one attribute of that handle
    ${import:Infra.ec2_role}      capability imported from stack 'Infra'
    ${import:Infra.db_secret.arn} one attribute of that capability
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable, Iterable, Mapping
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from infracompose.core.errors import ValidationError
from infracompose.core.models.capability import CapabilityRef

_ID_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_\-]*$")
_LOCAL_REF_RE = re.compile(r"^([A-Za-z][A-Za-z0-9_\-]*)(?:\.([A-Za-z][A-Za-z0-9_\-]*))?$")
_TOKEN_RE = re.compile(r"\$\{(ref|import):([^}]*)\}")


class ResourceKind(StrEnum):
    """Resource kinds the engine knows how to describe."""

    NETWORK = "network"
    SECURITY_GROUP = "security_group"
    DATABASE = "database"
    SECRET = "secret"
    ROLE = "role"
    POLICY = "policy"
    INSTANCE_PROFILE = "instance_profile"
    COMPUTE_INSTANCE = "compute_instance"
    LOAD_BALANCER = "load_balancer"
    LISTENER = "listener"
    DNS_ZONE = "dns_zone"
    DNS_RECORD = "dns_record"
    EMAIL_IDENTITY = "email_identity"
    ARTIFACT_BUCKET = "artifact_bucket"
    BUILD_PROJECT = "build_project"
    DEPLOY_APPLICATION = "deploy_application"
    DEPLOYMENT_GROUP = "deployment_group"
    CUSTOM = "custom"


REQUIRED_CONFIG: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.NETWORK: ("cidr",),
    ResourceKind.SECURITY_GROUP: ("network",),
    ResourceKind.DATABASE: ("engine", "instance_class"),
    ResourceKind.SECRET: ("name",),
    ResourceKind.ROLE: ("assumed_by",),
    ResourceKind.POLICY: ("role", "actions", "resources"),
    ResourceKind.INSTANCE_PROFILE: ("role",),
    ResourceKind.COMPUTE_INSTANCE: ("instance_type", "image"),
    ResourceKind.LOAD_BALANCER: ("network",),
    ResourceKind.LISTENER: ("load_balancer", "port"),
    ResourceKind.DNS_ZONE: ("zone_name",),
    ResourceKind.DNS_RECORD: ("zone", "record_type"),
    ResourceKind.EMAIL_IDENTITY: ("domain",),
    ResourceKind.ARTIFACT_BUCKET: (),
    ResourceKind.BUILD_PROJECT: ("commands",),
    ResourceKind.DEPLOY_APPLICATION: ("application_name",),
    ResourceKind.DEPLOYMENT_GROUP: ("application",),
    ResourceKind.CUSTOM: (),
}


class ResourceDescriptor(BaseModel):
    """One desired resource. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: ResourceKind
    config: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)
    depends_on: frozenset[str] = frozenset()
    when: CapabilityRef | None = None   # skip when this capability is absent

    @field_validator("config", mode="after")
    @classmethod
    def _freeze_config(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return freeze(value)

    def config_dict(self) -> dict[str, Any]:
        """A mutable deep copy of ``config``."""
        return thaw(self.config)

    @property
    def fingerprint(self) -> str:
        """Stable digest of everything that defines this resource."""
        payload = json.dumps(
            {
                "kind": self.kind.value,
                "config": self.config_dict(),
                "depends_on": sorted(self.depends_on),
                "when": str(self.when) if self.when else None,
            },
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    @property
    def imports(self) -> set[CapabilityRef]:
        """Capabilities this descriptor reads (tokens and `when`), without attributes."""
        refs = {
            CapabilityRef.parse(target).model_copy(update={"attribute": None})
            for scope, target in find_tokens(self.config)
            if scope == "import"
        }
        if self.when is not None:
            refs.add(self.when.model_copy(update={"attribute": None}))
        return refs


def freeze(value: Any) -> Any:
    """Read-only deep copy: mappings become proxies, lists become tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value


def find_tokens(value: Any) -> list[tuple[str, str]]:
    """Collect (scope, target) for every reference token in a config value."""
    found: list[tuple[str, str]] = []
    if isinstance(value, str):
        found.extend((m.group(1), m.group(2).strip()) for m in _TOKEN_RE.finditer(value))
    elif isinstance(value, Mapping):
        for item in value.values():
            found.extend(find_tokens(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.extend(find_tokens(item))
    return found


def render_config(
    value: Any,
    lookup: Callable[[str, str], Any],
) -> Any:
    """Substitute reference tokens using lookup(scope, target).

    A string that is exactly one token becomes the raw looked-up value
    (lists and None survive). Tokens embedded in longer strings are
    interpolated and must resolve to something.
    """
    if isinstance(value, str):
        whole = _TOKEN_RE.fullmatch(value)
        if whole:
            return lookup(whole.group(1), whole.group(2).strip())

        def _sub(match: re.Match[str]) -> str:
            resolved = lookup(match.group(1), match.group(2).strip())
            if resolved is None:
                raise ValidationError(f"Reference '{match.group(0)}' resolved to nothing")
            return str(resolved)

        return _TOKEN_RE.sub(_sub, value)
    if isinstance(value, Mapping):
        return {k: render_config(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_config(v, lookup) for v in value]
    return value


def create(
    id: str,
    kind: ResourceKind | str,
    config: dict[str, Any] | None = None,
    depends_on: Iterable[str] = (),
    when: CapabilityRef | str | None = None,
) -> ResourceDescriptor:
    """Build and validate a descriptor.

    Local ``${ref:...}`` tokens add their resource to ``depends_on``.
    Whether the dependencies exist is checked when the descriptor is
    added to a stack.

    Raises:
        ValidationError: Bad id or kind, a missing required config key,
            or a malformed reference token.
    """
    if not isinstance(id, str) or not _ID_RE.match(id):
        raise ValidationError(f"Invalid resource id {id!r}")

    try:
        resource_kind = ResourceKind(kind)
    except ValueError:
        valid = ", ".join(k.value for k in ResourceKind)
        raise ValidationError(
            f"Resource '{id}' has unknown kind '{kind}'. Valid: {valid}"
        ) from None

    config = config or {}
    if not isinstance(config, Mapping):
        raise ValidationError(f"Resource '{id}' config must be a mapping")

    missing = [key for key in REQUIRED_CONFIG[resource_kind] if key not in config]
    if missing:
        raise ValidationError(
            f"Resource '{id}' ({resource_kind.value}) is missing required config: "
            + ", ".join(missing)
        )

    deps = set(depends_on)
    for scope, target in find_tokens(config):
        if scope == "import":
            CapabilityRef.parse(target)
            continue
        match = _LOCAL_REF_RE.match(target)
        if match is None:
            raise ValidationError(f"Resource '{id}' has a malformed reference '${{ref:{target}}}'")
        deps.add(match.group(1))

    if id in deps:
        raise ValidationError(f"Resource '{id}' cannot depend on itself")

    if isinstance(when, str):
        when = CapabilityRef.parse(when.removeprefix("import:"))

    return ResourceDescriptor(
        id=id,
        kind=resource_kind,
        config=config,
        depends_on=frozenset(deps),
        when=when,
    )
