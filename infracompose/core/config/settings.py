"""
Provider settings — account/region-style identifiers for adapters.

The engine never interprets these values; it reads them from the
environment (IC_ACCOUNT, IC_REGION, IC_ENVIRONMENT), lets the
composition file override them, and hands them to adapters as-is.
"""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProviderSettings(BaseModel):
    """Opaque identifiers passed through to provisioning adapters."""

    # YAML reads an unquoted account id as an int
    model_config = ConfigDict(coerce_numbers_to_str=True)

    account: str = ""
    region: str = ""
    environment: str = "dev"
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_env(cls, overrides: dict[str, Any] | None = None) -> ProviderSettings:
        """Build settings from explicit overrides, then the environment.

        Environment variables win over the composition file so one
        composition can be deployed to several accounts.
        """
        data: dict[str, Any] = dict(overrides or {})
        env_map = {
            "account": "IC_ACCOUNT",
            "region": "IC_REGION",
            "environment": "IC_ENVIRONMENT",
        }
        for field_name, var in env_map.items():
            value = os.environ.get(var)
            if value:
                data[field_name] = value
        extra = dict(data.pop("extra", {}) or {})
        for key in list(data):
            if key not in cls.model_fields:
                extra[key] = data.pop(key)
        return cls(extra=extra, **data)
