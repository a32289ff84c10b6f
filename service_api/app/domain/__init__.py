"""
Endpoint handlers.

Each public handler is a ``CachedEndpoint``: it receives the ``ApiContext``
and its route parameters, and its result is served through the revalidating
cache.
"""

from .context import ApiContext
from .endpoint import CachedEndpoint, cached_endpoint
from .platforms import get_platforms
from .lending_vaults import get_lending_vaults
from .volumes import get_volumes, get_subgraph_data
from .crvusd import get_crvusd_price_endpoint, get_crvusd_total_supply

__all__ = [
    "ApiContext",
    "CachedEndpoint",
    "cached_endpoint",
    "get_platforms",
    "get_lending_vaults",
    "get_volumes",
    "get_subgraph_data",
    "get_crvusd_price_endpoint",
    "get_crvusd_total_supply",
]
