# Helpers - Utility Functions
# Small pure helpers shared by the HTTP and WebSocket layers

"""
Helpers Module

Provides utility functions for:
- Deriving the WebSocket endpoint from the HTTP endpoint
- Price feed id normalization
- Query parameter cleanup
- Calling callbacks that may be sync or async
"""

import inspect
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

_WS_SCHEMES = {
    "http": "ws",
    "https": "wss",
    "ws": "ws",
    "wss": "wss",
}


def make_websocket_url(endpoint: str) -> str:
    """
    Convert the HTTP endpoint into the matching WebSocket endpoint

    Host, port, path and query are preserved; only the scheme changes.

    Args:
        endpoint: HTTP(S) endpoint, e.g. "https://hermes.example.com/"

    Returns:
        WebSocket URL, e.g. "wss://hermes.example.com/"

    Raises:
        ValueError: if the endpoint scheme is not http(s) or ws(s)
    """
    parts = urlsplit(endpoint)
    scheme = _WS_SCHEMES.get(parts.scheme.lower())
    if scheme is None:
        raise ValueError(f"Unsupported endpoint scheme: {endpoint!r}")
    return urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))


def remove_leading_0x(feed_id: str) -> str:
    """Strip the optional 0x prefix from a price feed id."""
    return feed_id[2:] if feed_id.startswith("0x") else feed_id


def clean_query_params(params: Optional[Dict[str, Any]]) -> List[Tuple[str, str]]:
    """
    Flatten query parameters for transmission

    - None values are dropped
    - Booleans become "true" / "false"
    - Lists and tuples are expanded into repeated keys

    Args:
        params: Raw parameter mapping (may be None)

    Returns:
        List of (key, value) pairs
    """
    cleaned: List[Tuple[str, str]] = []
    if not params:
        return cleaned

    for key, value in params.items():
        if value is None:
            continue
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            if item is None:
                continue
            if isinstance(item, bool):
                cleaned.append((key, "true" if item else "false"))
            else:
                cleaned.append((key, str(item)))
    return cleaned


async def maybe_await(result: Any) -> Any:
    """Await the result of a callback if it returned an awaitable."""
    if inspect.isawaitable(result):
        return await result
    return result
