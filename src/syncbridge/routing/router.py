"""Request classification."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from urllib.parse import parse_qsl, urlsplit

from .rules import Classification, RoutingRule, RoutingTable


logger = logging.getLogger(__name__)

# Paths in the synced domain that reach the default deserve a look at the rule table
_REVIEW_PREFIXES = ("/api/device", "/api/tenant", "/api/customer/device")


@dataclass(frozen=True)
class RouteMatch:
    """The classification of one request and what the matched rule captured."""
    method: str
    path: str
    classification: Classification
    rule: RoutingRule | None = None
    path_params: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, str] = field(default_factory=dict)

    @property
    def target_operation(self) -> str | None:
        return self.rule.target_operation if self.rule else None

    @property
    def entity_kind(self) -> str | None:
        return self.rule.entity_kind if self.rule else None


def normalize_path(url: str) -> tuple[str, dict[str, str]]:
    """Split a URL (absolute or path-only) into its path and query parameters."""
    parts = urlsplit(url)
    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return path, dict(parse_qsl(parts.query, keep_blank_values=True))


class QueryRouter:
    """
    Classifies outbound requests against a fixed rule table.

    Total and deterministic: every request gets exactly one classification,
    `PASS_THROUGH` when no rule matches. No I/O.
    """

    def __init__(self, table: RoutingTable):
        self._table = table

    @property
    def table(self) -> RoutingTable:
        return self._table

    def classify(self, method: str, url: str) -> RouteMatch:
        method = method.upper()
        path, query = normalize_path(url)

        for rule in self._table:
            params = rule.match(method, path)
            if params is not None:
                return RouteMatch(
                    method=method,
                    path=path,
                    classification=rule.classification,
                    rule=rule,
                    path_params=params,
                    query_params=query,
                )

        if path.startswith(_REVIEW_PREFIXES):
            logger.debug(f"No routing rule for {method} {path}; passing through")
        return RouteMatch(method=method, path=path, classification=Classification.PASS_THROUGH, query_params=query)
