"""
HTTP loaders - Build fetch loaders on top of an httpx.AsyncClient.

The loader raises httpx's own exceptions; ErrorClassifier maps them onto
the service error taxonomy.
"""

from typing import Any, Awaitable, Callable

import httpx

Loader = Callable[[], Awaitable[Any]]


def http_loader(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    json_data: dict[str, Any] | None = None,
) -> Loader:
    """
    Loader that performs one HTTP request and returns the decoded JSON body.

    Usage:
        from outbound.services.keys import generate_search_key

        async with httpx.AsyncClient(base_url="https://hn.algolia.com/api/v1") as http:
            result = await client.fetch(
                "forum",
                generate_search_key("forum", "typescript"),
                http_loader(http, "/search", params={"query": "typescript"}),
            )
    """

    async def load() -> Any:
        response = await client.request(
            method=method,
            url=url,
            params=params,
            headers=headers,
            json=json_data,
        )
        response.raise_for_status()
        return response.json()

    return load


def create_http_client(timeout: float = 30.0, **kwargs: Any) -> httpx.AsyncClient:
    """AsyncClient with the defaults the loaders expect."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        follow_redirects=True,
        **kwargs,
    )
