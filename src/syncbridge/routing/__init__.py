"""Request routing - classify legacy API calls and serve them from the authority."""

from .rules import Classification, RoutingRule, RoutingTable, RuleError, load_routing_table
from .router import QueryRouter, RouteMatch
from .shapes import TransformError
from .transformer import QueryTransformer
from .cache import ReadYourWritesCache
from .transport import BridgeTransport, create_routing_client

__all__ = [
    "Classification",
    "RoutingRule",
    "RoutingTable",
    "RuleError",
    "load_routing_table",
    "QueryRouter",
    "RouteMatch",
    "TransformError",
    "QueryTransformer",
    "ReadYourWritesCache",
    "BridgeTransport",
    "create_routing_client",
]
