from __future__ import annotations
from typing import Any, Dict, List, Optional
import time

import requests
from azure.identity import DefaultAzureCredential

from apps_monitoring.domain import Tenant
from apps_monitoring.querying.query import QueryKind
from .base import QueryExecutor, Row, logger

LOG_ANALYTICS_SCOPE = "https://api.loganalytics.io/.default"


class WorkspaceNotConfigured(LookupError):
    pass


def flatten_tables(payload: Dict[str, Any]) -> List[Row]:
    """Turn the ``{"tables": [{"columns": [...], "rows": [[...]]}]}`` shape into dict rows.

    Each row carries ``_table``, the index of the result table it came from.
    """
    out: List[Row] = []
    tables = payload.get("tables") if isinstance(payload.get("tables"), list) else []
    for index, table in enumerate(tables):
        if not isinstance(table, dict):
            continue
        columns = [c.get("name") for c in table.get("columns", []) if isinstance(c, dict)]
        for raw in table.get("rows", []) or []:
            if not isinstance(raw, list):
                continue
            row = dict(zip(columns, raw))
            row["_table"] = index
            out.append(row)
    return out


class LogAnalyticsExecutor(QueryExecutor):
    name = "log_analytics"

    def __init__(
        self,
        workspaces: Dict[str, str],
        endpoint: str = "https://api.loganalytics.io",
        timeout_seconds: float = 120.0,
        credential: Optional[Any] = None,
        session: Optional[requests.Session] = None,
    ):
        self.workspaces = workspaces
        self.endpoint = endpoint.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._credential = credential or DefaultAzureCredential(exclude_interactive_browser_credential=True)
        self._session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0

    def _get_bearer(self) -> str:
        now = time.time()
        if self._token and now < (self._token_expires_at - 60):
            return self._token
        token = self._credential.get_token(LOG_ANALYTICS_SCOPE)
        self._token = token.token
        self._token_expires_at = float(getattr(token, "expires_on", 0) or 0)
        return self._token

    def execute(self, tenant: Tenant, query_text: str, kind: QueryKind) -> List[Row]:
        workspace = self.workspaces.get(tenant.value)
        if not workspace:
            raise WorkspaceNotConfigured(f"no Log Analytics workspace configured for tenant {tenant}")
        url = f"{self.endpoint}/v1/workspaces/{workspace}/query"
        resp = self._session.post(
            url,
            headers={"Authorization": f"Bearer {self._get_bearer()}"},
            json={"query": query_text},
            timeout=self.timeout_seconds,
        )
        resp.raise_for_status()
        payload = resp.json()
        if not isinstance(payload, dict):
            raise ValueError("Log Analytics response was not a JSON object.")
        if payload.get("error"):
            # partial results come back with an error object alongside tables
            logger.warning("Log Analytics returned partial results for %s: %s", tenant, payload["error"])
            raise ValueError(f"Log Analytics query failed: {payload['error']}")
        rows = flatten_tables(payload)
        logger.debug("Log Analytics %s returned %d %s rows", tenant, len(rows), kind.value)
        return rows
