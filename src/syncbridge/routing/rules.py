"""Routing rules: (method, path pattern) -> classification + target operation.

Rules are matched in order and the first match wins. Patterns are path
templates where ``{name}`` matches one path segment and is captured as a
path parameter. More specific templates must be listed before generic ones
that would also match (``/api/device/types`` before ``/api/device/{deviceId}``,
``/api/tenant/devices`` before ``/api/tenant/{tenantId}``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable


class Classification(str, Enum):
    READ = "read"
    WRITE = "write"
    PASS_THROUGH = "pass_through"


class RuleError(ValueError):
    """Raised for malformed routing rules."""
    pass


_PARAM = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


def compile_template(template: str) -> re.Pattern:
    if not template.startswith("/"):
        raise RuleError(f"Pattern must start with '/': {template!r}")
    pos = 0
    parts = []
    for m in _PARAM.finditer(template):
        parts.append(re.escape(template[pos:m.start()]))
        parts.append(f"(?P<{m.group(1)}>[^/]+)")
        pos = m.end()
    parts.append(re.escape(template[pos:]))
    return re.compile("^" + "".join(parts) + "$")


@dataclass(frozen=True)
class RoutingRule:
    methods: frozenset[str]
    pattern: str
    classification: Classification
    target_operation: str = ""
    entity_kind: str = ""
    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.classification != Classification.PASS_THROUGH and not (self.target_operation and self.entity_kind):
            raise RuleError(f"{self.pattern}: read/write rules need target_operation and entity_kind")
        object.__setattr__(self, "methods", frozenset(m.upper() for m in self.methods))
        object.__setattr__(self, "_regex", compile_template(self.pattern))

    def match(self, method: str, path: str) -> dict[str, str] | None:
        if method not in self.methods:
            return None
        m = self._regex.match(path)
        return m.groupdict() if m else None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoutingRule:
        methods = data.get("methods") or data.get("method")
        if isinstance(methods, str):
            methods = [methods]
        if not methods or "pattern" not in data:
            raise RuleError(f"Rule needs methods and pattern: {data}")
        try:
            classification = Classification(data.get("classification", "pass_through"))
        except ValueError as e:
            raise RuleError(str(e)) from e
        return cls(
            methods=frozenset(methods),
            pattern=data["pattern"],
            classification=classification,
            target_operation=data.get("operation", ""),
            entity_kind=data.get("entity", ""),
        )


def _rule(methods: str, pattern: str, classification: Classification, operation: str = "", entity: str = "") -> RoutingRule:
    return RoutingRule(frozenset(methods.split(",")), pattern, classification, operation, entity)


R, W, P = Classification.READ, Classification.WRITE, Classification.PASS_THROUGH

DEFAULT_RULES: tuple[RoutingRule, ...] = (
    # Device writes
    _rule("POST", "/api/device", W, "saveDevice", "device"),
    _rule("POST", "/api/device/credentials", W, "saveDeviceCredentials", "device"),
    _rule("PUT", "/api/device/{deviceId}", W, "saveDevice", "device"),
    _rule("DELETE", "/api/device/{deviceId}", W, "deleteDevice", "device"),
    _rule("POST", "/api/customer/{customerId}/device/{deviceId}", W, "assignDeviceToCustomer", "device"),
    _rule("DELETE", "/api/customer/device/{deviceId}", W, "unassignDeviceFromCustomer", "device"),
    _rule("POST", "/api/customer/device/{deviceName}/claim", W, "claimDevice", "device"),
    _rule("DELETE", "/api/customer/device/{deviceName}/claim", W, "reclaimDevice", "device"),

    # Device reads; credentials never leave the authority through the read model
    _rule("GET", "/api/device/types", P),
    _rule("GET", "/api/device/{deviceId}/credentials", P),
    _rule("GET", "/api/device/info/{deviceId}", R, "getDeviceInfo", "device"),
    _rule("GET", "/api/device/{deviceId}", R, "getDevice", "device"),
    _rule("GET", "/api/tenant/devices", R, "getDevices", "device"),
    _rule("GET", "/api/tenant/deviceInfos", R, "getDeviceInfos", "device"),
    _rule("GET", "/api/customer/{customerId}/devices", R, "getCustomerDevices", "device"),
    _rule("GET", "/api/customer/{customerId}/deviceInfos", R, "getCustomerDeviceInfos", "device"),

    # Tenants
    _rule("POST", "/api/tenant", W, "saveTenant", "tenant"),
    _rule("DELETE", "/api/tenant/{tenantId}", W, "deleteTenant", "tenant"),
    _rule("GET", "/api/tenant/info/{tenantId}", R, "getTenantInfo", "tenant"),
    _rule("GET", "/api/tenant/{tenantId}", R, "getTenant", "tenant"),
    _rule("GET", "/api/tenants", R, "getTenants", "tenant"),
    _rule("GET", "/api/tenantInfos", R, "getTenantInfos", "tenant"),
)


class RoutingTable:
    """Immutable ordered rule table. Build once at startup and share."""

    __slots__ = ("_rules",)

    def __init__(self, rules: Iterable[RoutingRule] = DEFAULT_RULES):
        object.__setattr__(self, "_rules", tuple(rules))

    def __setattr__(self, name, value):
        raise AttributeError("RoutingTable is immutable")

    @property
    def rules(self) -> tuple[RoutingRule, ...]:
        return self._rules

    def __iter__(self):
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    @classmethod
    def from_yaml(cls, path: str) -> RoutingTable:
        """Load rules from a YAML file with a top-level ``rules`` list."""
        import yaml
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls(RoutingRule.from_dict(item) for item in data.get("rules", []))


def load_routing_table(rules_file: str | None) -> RoutingTable:
    return RoutingTable.from_yaml(rules_file) if rules_file else RoutingTable()
