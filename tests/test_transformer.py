"""Tests for legacy <-> authority request and response transformation."""

import json

import httpx
import pytest

from syncbridge.engine.client import EngineWriteRequest
from syncbridge.routing.router import QueryRouter
from syncbridge.routing.rules import RoutingTable
from syncbridge.routing.shapes import DEVICE_SHAPE, TransformError
from syncbridge.routing.transformer import QueryTransformer, bearer_token

from conftest import LEGACY_URL


@pytest.fixture
def router():
    return QueryRouter(RoutingTable())


@pytest.fixture
def transformer():
    return QueryTransformer()


def request(method, path, body=None, headers=None):
    kwargs = {"headers": headers or {}}
    if body is not None:
        kwargs["content"] = json.dumps(body).encode()
    return httpx.Request(method, f"{LEGACY_URL}{path}", **kwargs)


class TestReadQueries:
    def test_single_read(self, router, transformer):
        query = transformer.to_query(router.classify("GET", "/api/device/dev-1"))

        assert query.single
        assert query.variables == {"id": "dev-1"}
        assert query.result_field == "device"
        assert query.query.startswith("query Device($id: ID!) { device(id: $id)")

    def test_list_read_paging(self, router, transformer):
        match = router.classify(
            "GET", "/api/tenant/devices?pageSize=20&page=3&textSearch=boil&type=thermostat"
                   "&sortProperty=name&sortOrder=desc",
        )

        query = transformer.to_query(match)

        assert query.variables == {
            "first": 20,
            "offset": 60,
            "textSearch": "boil",
            "type": "thermostat",
            "sort": {"property": "name", "order": "DESC"},
        }
        assert "$sort: SortInput" in query.query
        assert "totalCount pageInfo { hasNextPage }" in query.query

    def test_customer_scope(self, router, transformer):
        query = transformer.to_query(router.classify("GET", "/api/customer/cust-1/deviceInfos?pageSize=5&page=0"))
        assert query.variables["customerId"] == "cust-1"
        assert query.result_field == "customerDeviceInfos"
        assert transformer.is_info(router.classify("GET", "/api/customer/cust-1/deviceInfos"))

    def test_tenant_list_rejects_device_filter(self, router, transformer):
        with pytest.raises(TransformError, match="type"):
            transformer.to_query(router.classify("GET", "/api/tenants?pageSize=5&page=0&type=x"))

    @pytest.mark.parametrize("url", [
        "/api/tenant/devices?page=0",
        "/api/tenant/devices?pageSize=0&page=0",
        "/api/tenant/devices?pageSize=1001&page=0",
        "/api/tenant/devices?pageSize=10&page=-1",
        "/api/tenant/devices?pageSize=ten&page=0",
        "/api/tenant/devices?pageSize=10&page=0&sortProperty=secretKey",
        "/api/tenant/devices?pageSize=10&page=0&sortProperty=name&sortOrder=sideways",
        "/api/tenant/devices?pageSize=10&page=0&sortOrder=ASC",
        "/api/tenant/devices?pageSize=10&page=0&includeCustomers=true",
        "/api/device/dev-1?inlineImages=true",
    ])
    def test_fails_closed(self, router, transformer, url):
        with pytest.raises(TransformError):
            transformer.to_query(router.classify("GET", url))

    def test_pass_through_is_not_a_read(self, router, transformer):
        with pytest.raises(TransformError):
            transformer.to_query(router.classify("GET", "/api/alarms"))


class TestReadResponses:
    def test_single_reshaped(self, router, transformer):
        query = transformer.to_query(router.classify("GET", "/api/device/dev-1"))

        entity = transformer.from_query_response({"device": {
            "id": "dev-1", "name": "Boiler", "type": "thermostat", "createdTime": 1714564800000,
            "additionalInfo": '{"gateway": true}', "customerTitle": "Acme",
        }}, query)

        assert entity == {
            "id": {"id": "dev-1", "entityType": "DEVICE"},
            "name": "Boiler",
            "type": "thermostat",
            "createdTime": 1714564800000,
            "additionalInfo": {"gateway": True},
        }

    def test_info_variant_keeps_info_fields(self, router, transformer):
        match = router.classify("GET", "/api/device/info/dev-1")
        query = transformer.to_query(match)

        entity = transformer.from_query_response(
            {"deviceInfo": {"id": "dev-1", "name": "n", "type": "t", "customerTitle": "Acme", "active": True}},
            query, info=transformer.is_info(match),
        )

        assert entity["customerTitle"] == "Acme"
        assert entity["active"] is True

    def test_missing_single_raises(self, router, transformer):
        query = transformer.to_query(router.classify("GET", "/api/device/dev-1"))
        with pytest.raises(TransformError, match="not found"):
            transformer.from_query_response({"device": None}, query)

    def test_page_envelope(self, router, transformer):
        query = transformer.to_query(router.classify("GET", "/api/tenants?pageSize=2&page=0"))
        data = {"tenants": {
            "edges": [{"node": {"id": "t1", "title": "A"}}, {"node": {"id": "t2", "title": "B"}}],
            "totalCount": 5,
            "pageInfo": {"hasNextPage": True},
        }}

        page = transformer.from_query_response(data, query)

        assert [t["title"] for t in page["data"]] == ["A", "B"]
        assert page["totalPages"] == 3
        assert page["totalElements"] == 5
        assert page["hasNext"] is True

    @pytest.mark.parametrize("result", [
        None,
        {"edges": "nope", "totalCount": 1},
        {"edges": [{"cursor": "x"}], "totalCount": 1},
        {"edges": [], "totalCount": None},
        {"edges": [{"node": {"name": "no id", "type": "t"}}], "totalCount": 1},
    ])
    def test_malformed_page_raises(self, router, transformer, result):
        query = transformer.to_query(router.classify("GET", "/api/tenant/devices?pageSize=2&page=0"))
        with pytest.raises(TransformError):
            transformer.from_query_response({"devices": result}, query)

    def test_unmappable_node_raises(self):
        with pytest.raises(TransformError, match="device"):
            DEVICE_SHAPE.to_legacy({"id": "dev-1", "type": "t"})


class TestWrites:
    def test_create_device(self, router, transformer):
        body = {"name": "Boiler", "type": "thermostat"}
        req = request("POST", "/api/device", body, headers={"X-Authorization": "Bearer caller-jwt"})

        write = transformer.to_engine_write(router.classify("POST", "/api/device"), req)

        assert write.operation == "saveDevice"
        assert write.entity_kind == "device"
        assert write.payload == {"device": body}
        assert write.entity_id is None
        assert write.bearer_token == "caller-jwt"

    def test_update_device_id_mismatch(self, router, transformer):
        req = request("PUT", "/api/device/dev-1", {"id": {"id": "dev-2"}, "name": "n", "type": "t"})
        with pytest.raises(TransformError, match="does not match"):
            transformer.to_engine_write(router.classify("PUT", "/api/device/dev-1"), req)

    def test_delete(self, router, transformer):
        write = transformer.to_engine_write(
            router.classify("DELETE", "/api/device/dev-1"), request("DELETE", "/api/device/dev-1"),
        )
        assert write.removes_entity
        assert write.entity_id == "dev-1"

    def test_assignment(self, router, transformer):
        path = "/api/customer/cust-1/device/dev-1"
        write = transformer.to_engine_write(router.classify("POST", path), request("POST", path))
        assert write.payload == {"deviceId": "dev-1", "customerId": "cust-1"}

    def test_credentials_not_cached(self, router, transformer):
        body = {"deviceId": {"id": "dev-1"}, "credentialsType": "ACCESS_TOKEN", "credentialsId": "t"}
        write = transformer.to_engine_write(
            router.classify("POST", "/api/device/credentials"), request("POST", "/api/device/credentials", body),
        )
        assert write.entity_id == "dev-1"
        assert not write.caches_result

    def test_claim_with_secret(self, router, transformer):
        path = "/api/customer/device/sensor-7/claim"
        write = transformer.to_engine_write(router.classify("POST", path), request("POST", path, {"secretKey": "k"}))
        assert write.payload == {"deviceName": "sensor-7", "secretKey": "k"}
        assert write.entity_id is None

    @pytest.mark.parametrize("content", [b"", b"not json", b"[1, 2]"])
    def test_bad_bodies_fail_closed(self, router, transformer, content):
        req = httpx.Request("POST", f"{LEGACY_URL}/api/device", content=content)
        with pytest.raises(TransformError):
            transformer.to_engine_write(router.classify("POST", "/api/device"), req)


class TestEngineResponses:
    def test_wrapped_result_merges_over_submitted(self, transformer):
        write = EngineWriteRequest(
            operation="saveDevice", entity_kind="device",
            payload={"device": {"name": "Boiler", "type": "thermostat", "label": "old"}},
        )

        entity = transformer.from_engine_response({"device": {"id": "dev-9", "label": "new"}}, write)

        assert entity["id"] == {"id": "dev-9", "entityType": "DEVICE"}
        assert entity["label"] == "new"
        assert entity["name"] == "Boiler"

    def test_removal_returns_nothing(self, transformer):
        write = EngineWriteRequest(operation="deleteDevice", entity_kind="device", entity_id="d", removes_entity=True)
        assert transformer.from_engine_response({"ok": True}, write) is None

    def test_empty_relationship_result(self, transformer):
        write = EngineWriteRequest(operation="unassignDeviceFromCustomer", entity_kind="device", entity_id="d")
        assert transformer.from_engine_response(None, write) is None

    def test_uncached_result_passes_raw(self, transformer):
        write = EngineWriteRequest(operation="saveDeviceCredentials", entity_kind="device", caches_result=False)
        raw = {"credentialsId": "t"}
        assert transformer.from_engine_response(raw, write) == raw

    def test_non_entity_result_raises(self, transformer):
        write = EngineWriteRequest(operation="claimDevice", entity_kind="device")
        with pytest.raises(TransformError):
            transformer.from_engine_response("claimed", write)


class TestBearerToken:
    @pytest.mark.parametrize("headers, expected", [
        ({"Authorization": "Bearer abc"}, "abc"),
        ({"X-Authorization": "Bearer xyz"}, "xyz"),
        ({"Authorization": "raw-token"}, "raw-token"),
        ({}, None),
    ])
    def test_extraction(self, headers, expected):
        assert bearer_token(httpx.Request("GET", LEGACY_URL, headers=headers)) == expected
