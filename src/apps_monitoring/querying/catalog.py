"""Environment-specific sets of query definitions.

A catalog variant is one of a closed set (``CatalogSource``). Loading is
deterministic: the same environment and source always produce the same
ordered list, and therefore the same fingerprints.
"""
from __future__ import annotations

import json
import logging
from enum import Enum

from apps_monitoring.config import Settings, parse_csv
from apps_monitoring.errors import ConfigurationError
from apps_monitoring.querying.query import QueryDefinition, QueryKind

logger = logging.getLogger(__name__)

TARGET = "{target}"
PRODUCTION_HOST = "platform.altinn.no"

_FAILED_STORAGE_EVENTS = (
    "AppDependencies\n"
    "| where TimeGenerated >= todatetime('{searchFrom}') and TimeGenerated < todatetime('{searchTo}')\n"
    "| where Success == false\n"
    "| where Target startswith \"{target}\"\n"
    "| where Name startswith \"POST /storage/api/v1/instances/\" and Name endswith \"/events\"\n"
    "| join kind=inner AppRequests on OperationId\n"
    "| where OperationName1 startswith \"PUT Process/NextElement\" or OperationName1 endswith \"/process/next\"\n"
    "| where Success1 == false\n"
)

_FAILED_ALTINN_EVENTS = (
    "AppDependencies\n"
    "| where TimeGenerated >= todatetime('{searchFrom}') and TimeGenerated < todatetime('{searchTo}')\n"
    "| where Success == false\n"
    "| where Target startswith \"{target}\"\n"
    "| where Name == \"POST /events/api/v1/app\"\n"
    "| join kind=inner AppRequests on OperationId\n"
    "| where OperationName1 startswith \"PUT Process/NextElement\" or OperationName1 endswith \"/process/next\"\n"
)

_ROLES_API_REQUESTS = (
    "AppRequests\n"
    "| where TimeGenerated >= todatetime('{searchFrom}') and TimeGenerated < todatetime('{searchTo}')\n"
    "| where Name == 'GET Authorization/GetRolesForCurrentParty [app/org]'\n"
    "| summarize ['Value'] = sum(ItemCount) by bin(TimeGenerated, 1d), App = AppRoleName, AppVersion, Name\n"
    "| order by TimeGenerated desc\n"
)

STATIC_QUERIES: list[tuple[str, QueryKind, str]] = [
    ("Failed Storage instance events", QueryKind.TRACES, _FAILED_STORAGE_EVENTS),
    ("Failed Altinn events", QueryKind.TRACES, _FAILED_ALTINN_EVENTS),
    ("Roles API requests", QueryKind.METRICS, _ROLES_API_REQUESTS),
]


class CatalogSource(str, Enum):
    STATIC = "static"
    JSON = "json"


def resolve_target_host(environment: str, known_environments: list[str], production_environment: str = "prod") -> str:
    env = (environment or "").strip()
    if env not in known_environments:
        raise ConfigurationError(f"unknown environment {environment!r}; known: {', '.join(known_environments)}")
    if env == production_environment:
        return PRODUCTION_HOST
    return f"platform.{env}.altinn.no"


class QueryCatalog:
    def __init__(
        self,
        source: CatalogSource | str = CatalogSource.STATIC,
        known_environments: list[str] | None = None,
        production_environment: str = "prod",
        catalog_json: str | None = None,
    ):
        try:
            self.source = CatalogSource(source)
        except ValueError as e:
            raise ConfigurationError(f"unknown query catalog {source!r}") from e
        self.known_environments = known_environments or []
        self.production_environment = production_environment
        self.catalog_json = catalog_json

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueryCatalog":
        return cls(
            source=settings.query_catalog,
            known_environments=parse_csv(settings.known_environments),
            production_environment=settings.production_environment,
            catalog_json=settings.query_catalog_json,
        )

    def load(self, environment: str) -> list[QueryDefinition]:
        target = resolve_target_host(environment, self.known_environments, self.production_environment)
        if self.source is CatalogSource.STATIC:
            raw = list(STATIC_QUERIES)
        else:
            raw = self._parse_json()
        queries: list[QueryDefinition] = []
        seen: set[str] = set()
        for name, kind, template in raw:
            if name in seen:
                raise ConfigurationError(f"duplicate query name {name!r} in {self.source.value} catalog")
            seen.add(name)
            queries.append(QueryDefinition(name=name, kind=kind, template=template.replace(TARGET, target)))
        logger.info("Loaded %d queries for environment %s (target %s)", len(queries), environment, target)
        return queries

    def _parse_json(self) -> list[tuple[str, QueryKind, str]]:
        if not self.catalog_json:
            raise ConfigurationError("QUERY_CATALOG_JSON is required for the json catalog")
        try:
            items = json.loads(self.catalog_json)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"malformed query catalog JSON: {e}") from e
        if not isinstance(items, list):
            raise ConfigurationError("query catalog JSON must be a list")
        out: list[tuple[str, QueryKind, str]] = []
        for item in items:
            if not isinstance(item, dict):
                raise ConfigurationError("query catalog entries must be objects")
            try:
                kind = QueryKind(item.get("kind", QueryKind.TRACES.value))
            except ValueError as e:
                raise ConfigurationError(f"unknown query kind {item.get('kind')!r}") from e
            out.append((str(item.get("name") or ""), kind, str(item.get("template") or "")))
        return out
