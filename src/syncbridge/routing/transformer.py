"""Request/response transformation between legacy REST shapes and the authority.

Reads become structured query-service requests, writes become engine protocol
operations, and results are reshaped back into what a legacy caller expects.
Anything the transformer does not fully understand raises `TransformError`;
the transport turns that into a fallback to the legacy platform.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

import httpx

from ..engine.client import EngineWriteRequest
from ..mapping.types import MappingError, plain_id
from ..query.client import QueryServiceRequest
from .router import RouteMatch
from .rules import Classification
from .shapes import TransformError, shape_for


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
SORT_PROPERTIES = frozenset({"name", "type", "label", "createdTime", "title"})
SORT_ORDERS = frozenset({"ASC", "DESC"})

# Query parameters each list read understands; anything else is refused
_LIST_PARAMS = frozenset({"pageSize", "page", "textSearch", "sortProperty", "sortOrder"})
_DEVICE_LIST_PARAMS = _LIST_PARAMS | {"type"}


def _int_param(params: dict[str, str], name: str, minimum: int, maximum: int | None = None) -> int:
    raw = params.get(name)
    if raw is None:
        raise TransformError(f"Missing required parameter {name}")
    try:
        value = int(raw)
    except ValueError as e:
        raise TransformError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum or (maximum is not None and value > maximum):
        raise TransformError(f"{name} out of range: {value}")
    return value


def _page_variables(params: dict[str, str], allowed: frozenset[str]) -> dict[str, Any]:
    unknown = set(params) - allowed
    if unknown:
        raise TransformError(f"Unsupported parameter(s): {', '.join(sorted(unknown))}")

    page_size = _int_param(params, "pageSize", 1, MAX_PAGE_SIZE)
    page = _int_param(params, "page", 0)
    variables: dict[str, Any] = {"first": page_size, "offset": page * page_size}

    if params.get("textSearch"):
        variables["textSearch"] = params["textSearch"]
    if params.get("type"):
        variables["type"] = params["type"]
    if "sortProperty" in params:
        if params["sortProperty"] not in SORT_PROPERTIES:
            raise TransformError(f"Unsupported sortProperty {params['sortProperty']!r}")
        order = params.get("sortOrder", "ASC").upper()
        if order not in SORT_ORDERS:
            raise TransformError(f"Unsupported sortOrder {params.get('sortOrder')!r}")
        variables["sort"] = {"property": params["sortProperty"], "order": order}
    elif "sortOrder" in params:
        raise TransformError("sortOrder without sortProperty")
    return variables


def _single(kind: str, field: str, id_param: str, info: bool = False):
    def build(match: RouteMatch) -> QueryServiceRequest:
        if match.query_params:
            raise TransformError(f"{field}: unexpected query parameters")
        entity_id = match.path_params.get(id_param)
        if not entity_id:
            raise TransformError(f"{field}: missing {id_param}")
        shape = shape_for(kind)
        return QueryServiceRequest(
            query=f"query {field[0].upper()}{field[1:]}($id: ID!) {{ {field}(id: $id) {{ {shape.fields} }} }}",
            variables={"id": entity_id},
            entity_kind=kind,
            result_field=field,
            single=True,
            entity_id=entity_id,
        )
    build.info = info
    return build


def _listing(kind: str, field: str, allowed: frozenset[str], scope_param: str | None = None, info: bool = False):
    def build(match: RouteMatch) -> QueryServiceRequest:
        variables = _page_variables(match.query_params, allowed)
        if scope_param:
            scope = match.path_params.get(scope_param)
            if not scope:
                raise TransformError(f"{field}: missing {scope_param}")
            variables[scope_param] = scope
        shape = shape_for(kind)
        declared = ", ".join(f"${name}: {_GRAPHQL_TYPES[name]}" for name in variables)
        passed = ", ".join(f"{name}: ${name}" for name in variables)
        return QueryServiceRequest(
            query=(
                f"query {field[0].upper()}{field[1:]}({declared}) {{ {field}({passed}) {{ "
                f"edges {{ node {{ {shape.fields} }} }} totalCount pageInfo {{ hasNextPage }} }} }}"
            ),
            variables=variables,
            entity_kind=kind,
            result_field=field,
        )
    build.info = info
    return build


_GRAPHQL_TYPES = {
    "first": "Int!",
    "offset": "Int!",
    "textSearch": "String",
    "type": "String",
    "sort": "SortInput",
    "customerId": "ID!",
}


QUERY_BUILDERS: dict[str, Callable[[RouteMatch], QueryServiceRequest]] = {
    "getDevice": _single("device", "device", "deviceId"),
    "getDeviceInfo": _single("device", "deviceInfo", "deviceId", info=True),
    "getDevices": _listing("device", "devices", _DEVICE_LIST_PARAMS),
    "getDeviceInfos": _listing("device", "deviceInfos", _DEVICE_LIST_PARAMS, info=True),
    "getCustomerDevices": _listing("device", "customerDevices", _DEVICE_LIST_PARAMS, scope_param="customerId"),
    "getCustomerDeviceInfos": _listing(
        "device", "customerDeviceInfos", _DEVICE_LIST_PARAMS, scope_param="customerId", info=True,
    ),
    "getTenant": _single("tenant", "tenant", "tenantId"),
    "getTenantInfo": _single("tenant", "tenantInfo", "tenantId", info=True),
    "getTenants": _listing("tenant", "tenants", _LIST_PARAMS),
    "getTenantInfos": _listing("tenant", "tenantInfos", _LIST_PARAMS, info=True),
}


# Write builders

def _json_body(request: httpx.Request, required: bool = True) -> dict[str, Any]:
    if not request.content:
        if required:
            raise TransformError("Write request has no body")
        return {}
    try:
        body = json.loads(request.content)
    except ValueError as e:
        raise TransformError(f"Write body is not JSON: {e}") from e
    if not isinstance(body, dict):
        raise TransformError("Write body must be a JSON object")
    return body


def _body_id(body: dict[str, Any]) -> str | None:
    try:
        return plain_id(body.get("id"), "id")
    except MappingError as e:
        raise TransformError(str(e)) from e


def _save_device(match: RouteMatch, body: dict[str, Any]) -> dict[str, Any]:
    path_id = match.path_params.get("deviceId")
    if path_id and _body_id(body) not in (None, path_id):
        raise TransformError(f"Body id does not match path device {path_id}")
    return {"payload": {"device": body}, "entity_id": path_id or _body_id(body)}


def _delete_entity(param: str):
    def build(match: RouteMatch, body: dict[str, Any]) -> dict[str, Any]:
        entity_id = match.path_params[param]
        return {"payload": {"id": entity_id}, "entity_id": entity_id, "removes_entity": True}
    return build


def _assign(match: RouteMatch, body: dict[str, Any]) -> dict[str, Any]:
    device_id = match.path_params["deviceId"]
    return {
        "payload": {"deviceId": device_id, "customerId": match.path_params["customerId"]},
        "entity_id": device_id,
    }


def _unassign(match: RouteMatch, body: dict[str, Any]) -> dict[str, Any]:
    device_id = match.path_params["deviceId"]
    return {"payload": {"deviceId": device_id}, "entity_id": device_id}


def _save_credentials(match: RouteMatch, body: dict[str, Any]) -> dict[str, Any]:
    try:
        device_id = plain_id(body.get("deviceId"), "deviceId")
    except MappingError as e:
        raise TransformError(str(e)) from e
    if not device_id:
        raise TransformError("Credentials body has no deviceId")
    return {
        "payload": {"deviceId": device_id, "credentials": body},
        "entity_id": device_id,
        "caches_result": False,
    }


def _claim(match: RouteMatch, body: dict[str, Any]) -> dict[str, Any]:
    payload = {"deviceName": match.path_params["deviceName"]}
    if body.get("secretKey") is not None:
        payload["secretKey"] = body["secretKey"]
    # The response carries the claimed device; its id is not known up front
    return {"payload": payload}


def _reclaim(match: RouteMatch, body: dict[str, Any]) -> dict[str, Any]:
    return {"payload": {"deviceName": match.path_params["deviceName"]}}


def _save_tenant(match: RouteMatch, body: dict[str, Any]) -> dict[str, Any]:
    return {"payload": {"tenant": body}, "entity_id": _body_id(body)}


# operation -> (builder, body required)
WRITE_BUILDERS: dict[str, tuple[Callable[[RouteMatch, dict[str, Any]], dict[str, Any]], bool]] = {
    "saveDevice": (_save_device, True),
    "deleteDevice": (_delete_entity("deviceId"), False),
    "assignDeviceToCustomer": (_assign, False),
    "unassignDeviceFromCustomer": (_unassign, False),
    "saveDeviceCredentials": (_save_credentials, True),
    "claimDevice": (_claim, False),
    "reclaimDevice": (_reclaim, False),
    "saveTenant": (_save_tenant, True),
    "deleteTenant": (_delete_entity("tenantId"), False),
}


def bearer_token(request: httpx.Request) -> str | None:
    """The caller's token from `Authorization` or the legacy `X-Authorization` header."""
    for header in ("authorization", "x-authorization"):
        value = request.headers.get(header)
        if value:
            scheme, _, token = value.partition(" ")
            return token.strip() if scheme.lower() == "bearer" and token else value.strip()
    return None


class QueryTransformer:
    """Stateless facade over the builder tables and entity shapes."""

    def to_query(self, match: RouteMatch) -> QueryServiceRequest:
        if match.classification != Classification.READ:
            raise TransformError(f"{match.method} {match.path} is not a read")
        builder = QUERY_BUILDERS.get(match.target_operation or "")
        if builder is None:
            raise TransformError(f"No query builder for {match.target_operation!r}")
        return builder(match)

    def to_engine_write(self, match: RouteMatch, request: httpx.Request) -> EngineWriteRequest:
        if match.classification != Classification.WRITE:
            raise TransformError(f"{match.method} {match.path} is not a write")
        entry = WRITE_BUILDERS.get(match.target_operation or "")
        if entry is None:
            raise TransformError(f"No write builder for {match.target_operation!r}")
        builder, body_required = entry
        fields = builder(match, _json_body(request, required=body_required))
        return EngineWriteRequest(
            operation=match.target_operation,
            entity_kind=match.entity_kind,
            bearer_token=bearer_token(request),
            **fields,
        )

    def is_info(self, match: RouteMatch) -> bool:
        builder = QUERY_BUILDERS.get(match.target_operation or "")
        return bool(getattr(builder, "info", False))

    def from_query_response(self, data: dict[str, Any], query: QueryServiceRequest, info: bool = False) -> dict[str, Any]:
        """Reshape query-service `data` into a legacy entity or page."""
        shape = shape_for(query.entity_kind)
        result = data.get(query.result_field)
        if query.single:
            if result is None:
                raise TransformError(f"{query.result_field} {query.entity_id} not found in read model")
            return shape.to_legacy(result, info)

        if not isinstance(result, dict) or not isinstance(result.get("edges"), list):
            raise TransformError(f"{query.result_field}: expected edges list")
        nodes = []
        for edge in result["edges"]:
            if not isinstance(edge, dict) or "node" not in edge:
                raise TransformError(f"{query.result_field}: malformed edge")
            nodes.append(edge["node"])
        total = result.get("totalCount")
        if not isinstance(total, int) or isinstance(total, bool):
            raise TransformError(f"{query.result_field}: totalCount missing")
        has_next = bool((result.get("pageInfo") or {}).get("hasNextPage", False))
        return shape.to_page(nodes, total, query.variables["first"], has_next, info)

    def from_engine_response(self, raw: Any, write: EngineWriteRequest) -> dict[str, Any] | None:
        """
        Reshape an engine result into the legacy response entity.

        Returns None when the write removes the entity. The engine may return
        the entity bare or wrapped under its kind; engine fields win over the
        submitted body.
        """
        if write.removes_entity:
            return None
        if not write.caches_result:
            return raw if isinstance(raw, dict) else None

        submitted = write.payload.get(write.entity_kind)
        if raw is None and not isinstance(submitted, dict):
            # Relationship operations may answer with an empty body
            return None
        entity = raw
        if isinstance(raw, dict) and isinstance(raw.get(write.entity_kind), dict):
            entity = raw[write.entity_kind]
        if isinstance(submitted, dict):
            entity = {**submitted, **(entity if isinstance(entity, dict) else {})}
        if not isinstance(entity, dict):
            raise TransformError(f"{write.operation}: engine returned no entity")
        if "id" not in entity and write.entity_id:
            entity = {**entity, "id": write.entity_id}
        return shape_for(write.entity_kind).to_legacy(entity)
