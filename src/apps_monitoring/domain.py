from __future__ import annotations

import re
from dataclasses import dataclass

from apps_monitoring.config import Settings, parse_tenant_workspaces
from apps_monitoring.errors import ConfigurationError

_TENANT_RE = re.compile(r"^[a-z]+$")


@dataclass(frozen=True, order=True)
class Tenant:
    """A service owner whose apps are monitored, e.g. ``skd``."""

    value: str

    def __post_init__(self):
        if not isinstance(self.value, str) or not _TENANT_RE.match(self.value):
            raise ConfigurationError(f"invalid tenant {self.value!r}: expected lowercase letters only")

    @classmethod
    def parse(cls, value: str) -> "Tenant":
        return cls(value)

    def __str__(self) -> str:
        return self.value


def discover_tenants(settings: Settings) -> list[Tenant]:
    """Tenants to poll are the keys of TENANT_WORKSPACES, sorted."""
    return sorted(Tenant.parse(t) for t in parse_tenant_workspaces(settings.tenant_workspaces))
