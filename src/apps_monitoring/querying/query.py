from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from apps_monitoring.errors import ConfigurationError
from apps_monitoring.utils.timefmt import as_utc, format_instant

SEARCH_FROM = "{searchFrom}"
SEARCH_TO = "{searchTo}"


class QueryKind(str, Enum):
    TRACES = "traces"
    LOGS = "logs"
    METRICS = "metrics"


@dataclass(frozen=True)
class Window:
    """Half-open time range ``[start, end)``."""

    start: datetime
    end: datetime

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start


@dataclass(frozen=True)
class QueryDefinition:
    """A named, immutable query template.

    ``fingerprint`` is the SHA-256 hex digest of the UTF-8 template text, so
    the same text yields the same fingerprint in every process and any edit,
    whitespace included, produces a new one.
    """

    name: str
    kind: QueryKind
    template: str
    fingerprint: str = field(init=False)

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ConfigurationError("query name must not be empty")
        if not self.template or not self.template.strip():
            raise ConfigurationError(f"query {self.name!r} has an empty template")
        for marker in (SEARCH_FROM, SEARCH_TO):
            if marker not in self.template:
                raise ConfigurationError(f"query {self.name!r} is missing the {marker} marker")
        try:
            object.__setattr__(self, "kind", QueryKind(self.kind))
        except ValueError as e:
            raise ConfigurationError(f"query {self.name!r} has unknown kind {self.kind!r}") from e
        object.__setattr__(self, "fingerprint", fingerprint(self.template))

    def format(self, search_from: datetime, search_to: datetime) -> str:
        return (
            self.template
            .replace(SEARCH_FROM, format_instant(as_utc(search_from)))
            .replace(SEARCH_TO, format_instant(as_utc(search_to)))
        )

    def format_window(self, window: Window) -> str:
        return self.format(window.start, window.end)


def fingerprint(template: str) -> str:
    return hashlib.sha256(template.encode("utf-8")).hexdigest()
