"""Plain URL fetching for the ``fetchUrl`` tool."""

import json
import logging

import httpx

from graphrunner.tools.catalog import ToolError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


async def fetch_url(client: httpx.AsyncClient, url: str, format: str = "text") -> str:
    """
    GET a URL and return its body as text.

    JSON bodies (``format="json"`` or a JSON content type) are re-serialized
    with indentation.

    Raises:
        ToolError: On a non-2xx response
    """
    response = await client.get(url, follow_redirects=True)
    if not response.is_success:
        raise ToolError(f"Failed to fetch URL: {response.status_code} {response.reason_phrase}")

    content_type = response.headers.get("content-type", "")
    if format == "json" or "application/json" in content_type:
        return json.dumps(response.json(), indent=2)
    return response.text
