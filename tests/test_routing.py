"""Tests for request classification."""

from pathlib import Path

import pytest

from syncbridge.routing.router import QueryRouter, normalize_path
from syncbridge.routing.rules import (
    DEFAULT_RULES,
    Classification,
    RoutingRule,
    RoutingTable,
    RuleError,
    load_routing_table,
)


@pytest.fixture
def router():
    return QueryRouter(RoutingTable())


class TestDefaultRules:
    @pytest.mark.parametrize("method, url, classification, operation", [
        ("GET", "/api/device/dev-1", Classification.READ, "getDevice"),
        ("GET", "/api/device/info/dev-1", Classification.READ, "getDeviceInfo"),
        ("GET", "/api/tenant/devices?pageSize=10&page=0", Classification.READ, "getDevices"),
        ("GET", "/api/customer/cust-1/devices?pageSize=5&page=1", Classification.READ, "getCustomerDevices"),
        ("GET", "/api/tenants?pageSize=10&page=0", Classification.READ, "getTenants"),
        ("GET", "/api/tenant/ten-1", Classification.READ, "getTenant"),
        ("POST", "/api/device", Classification.WRITE, "saveDevice"),
        ("PUT", "/api/device/dev-1", Classification.WRITE, "saveDevice"),
        ("DELETE", "/api/device/dev-1", Classification.WRITE, "deleteDevice"),
        ("POST", "/api/device/credentials", Classification.WRITE, "saveDeviceCredentials"),
        ("POST", "/api/customer/cust-1/device/dev-1", Classification.WRITE, "assignDeviceToCustomer"),
        ("DELETE", "/api/customer/device/dev-1", Classification.WRITE, "unassignDeviceFromCustomer"),
        ("POST", "/api/customer/device/sensor-7/claim", Classification.WRITE, "claimDevice"),
        ("POST", "/api/tenant", Classification.WRITE, "saveTenant"),
    ])
    def test_classification(self, router, method, url, classification, operation):
        match = router.classify(method, url)
        assert match.classification == classification
        assert match.target_operation == operation

    def test_specific_template_wins_over_generic(self, router):
        assert router.classify("GET", "/api/tenant/devices").target_operation == "getDevices"
        types = router.classify("GET", "/api/device/types")
        assert types.classification == Classification.PASS_THROUGH
        assert types.rule is not None

    def test_credentials_read_passes_through(self, router):
        assert router.classify("GET", "/api/device/dev-1/credentials").classification == Classification.PASS_THROUGH

    def test_unknown_request_passes_through(self, router):
        match = router.classify("GET", "/api/alarms?pageSize=10")
        assert match.classification == Classification.PASS_THROUGH
        assert match.rule is None
        assert match.target_operation is None
        assert match.query_params == {"pageSize": "10"}

    def test_method_mismatch_passes_through(self, router):
        assert router.classify("PATCH", "/api/device/dev-1").classification == Classification.PASS_THROUGH

    def test_captures_params(self, router):
        match = router.classify("post", "http://legacy.test/api/customer/cust-1/device/dev-1/")
        assert match.method == "POST"
        assert match.path == "/api/customer/cust-1/device/dev-1"
        assert match.path_params == {"customerId": "cust-1", "deviceId": "dev-1"}

    def test_classification_is_deterministic(self, router):
        first = router.classify("GET", "/api/device/dev-1?x=1")
        second = router.classify("GET", "/api/device/dev-1?x=1")
        assert first == second

    def test_every_default_read_and_write_has_target(self):
        for rule in DEFAULT_RULES:
            if rule.classification != Classification.PASS_THROUGH:
                assert rule.target_operation and rule.entity_kind


class TestRoutingTable:
    def test_first_match_wins(self):
        table = RoutingTable([
            RoutingRule(frozenset({"GET"}), "/api/device/{id}", Classification.PASS_THROUGH),
            RoutingRule(frozenset({"GET"}), "/api/device/{id}", Classification.READ, "getDevice", "device"),
        ])
        assert QueryRouter(table).classify("GET", "/api/device/x").classification == Classification.PASS_THROUGH

    def test_table_is_immutable(self):
        table = RoutingTable()
        with pytest.raises(AttributeError):
            table.extra = 1
        assert isinstance(table.rules, tuple)

    def test_read_rule_requires_target(self):
        with pytest.raises(RuleError):
            RoutingRule(frozenset({"GET"}), "/api/x", Classification.READ)

    def test_pattern_must_be_absolute(self):
        with pytest.raises(RuleError):
            RoutingRule(frozenset({"GET"}), "api/x", Classification.PASS_THROUGH)

    @pytest.mark.parametrize("data", [
        {"pattern": "/api/x"},
        {"methods": ["GET"]},
        {"methods": "GET", "pattern": "/api/x", "classification": "cache"},
    ])
    def test_bad_rule_dicts(self, data):
        with pytest.raises(RuleError):
            RoutingRule.from_dict(data)

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(
            "rules:\n"
            "  - method: GET\n"
            "    pattern: /api/device/{deviceId}\n"
            "    classification: read\n"
            "    operation: getDevice\n"
            "    entity: device\n"
            "  - methods: [POST, PUT]\n"
            "    pattern: /api/asset\n"
        )

        table = load_routing_table(str(path))

        assert len(table) == 2
        router = QueryRouter(table)
        assert router.classify("GET", "/api/device/d").target_operation == "getDevice"
        assert router.classify("PUT", "/api/asset").classification == Classification.PASS_THROUGH

    def test_no_file_uses_defaults(self):
        assert load_routing_table(None).rules == DEFAULT_RULES

    def test_sample_file_matches_built_in_table(self):
        sample = Path(__file__).resolve().parent.parent / "routing_rules.sample.yaml"
        assert load_routing_table(str(sample)).rules == DEFAULT_RULES


class TestNormalizePath:
    def test_keeps_blank_values(self):
        assert normalize_path("/api/tenants?textSearch=&page=0") == ("/api/tenants", {"textSearch": "", "page": "0"})

    def test_root(self):
        assert normalize_path("http://host") == ("/", {})

