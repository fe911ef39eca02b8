"""
Page text extraction for the ``extractUrlText`` tool.

The page is downloaded with httpx and parsed with BeautifulSoup. Page
chrome (scripts, styles, navigation, headers, footers) is dropped, and the
main content (``article``, ``main``, ``role=main`` or ``body``) is returned as
markdown or plain text.
"""

import logging
from typing import Any
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup, Tag

from graphrunner.tools.catalog import ToolError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

SCRAPE_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/131.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml",
}

_NOISE_TAGS = ["script", "style", "nav", "footer", "header", "aside", "noscript"]
_BLOCK_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6", "p", "li", "pre", "blockquote"]


def _main_content(soup: BeautifulSoup) -> Tag | None:
    return (
        soup.find("article")
        or soup.find("main")
        or soup.find(attrs={"role": "main"})
        or soup.find("body")
    )


def _to_markdown(main: Tag) -> str:
    blocks = []
    for element in main.find_all(_BLOCK_TAGS):
        # Nested blocks are rendered by their outermost block
        if element.find_parent(_BLOCK_TAGS) is not None:
            continue
        text = " ".join(element.get_text(separator=" ", strip=True).split())
        if not text:
            continue
        if element.name.startswith("h"):
            blocks.append(f"{'#' * int(element.name[1])} {text}")
        elif element.name == "li":
            blocks.append(f"- {text}")
        elif element.name == "pre":
            blocks.append(f"```\n{element.get_text()}\n```")
        elif element.name == "blockquote":
            blocks.append(f"> {text}")
        else:
            blocks.append(text)
    if not blocks:
        return _to_text(main)
    return "\n\n".join(blocks)


def _to_text(main: Tag) -> str:
    return " ".join(main.get_text(separator=" ", strip=True).split())


def _favicon(soup: BeautifulSoup, base_url: str) -> str:
    for link in soup.find_all("link", href=True):
        rel = link.get("rel") or []
        if any("icon" in r.lower() for r in rel):
            return urljoin(base_url, link["href"])
    return urljoin(base_url, "/favicon.ico")


async def extract_url_text(
    client: httpx.AsyncClient,
    url: str,
    include_images: bool = True,
    include_favicon: bool = True,
    format: str = "markdown",
) -> dict[str, Any]:
    """
    Download a page and extract its main text.

    Returns:
        Dict with ``url``, ``title``, ``content`` and, when requested,
        ``images`` (absolute image URLs) and ``favicon``

    Raises:
        ToolError: On a non-2xx response or an unreachable host
    """
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    try:
        response = await client.get(url, headers=SCRAPE_HEADERS, follow_redirects=True)
    except httpx.TimeoutException as e:
        raise ToolError(f"Request to {url} timed out") from e
    except httpx.HTTPError as e:
        raise ToolError(f"Failed to fetch {url}: {e}") from e
    if not response.is_success:
        raise ToolError(f"Failed to fetch URL: {response.status_code} {response.reason_phrase}")

    base_url = str(response.url)
    soup = BeautifulSoup(response.text, "html.parser")
    # Favicon links live in <head>, read them before the cleanup
    favicon = _favicon(soup, base_url) if include_favicon else None
    for tag in soup(_NOISE_TAGS):
        tag.decompose()

    title = soup.title.get_text(strip=True) if soup.title else ""
    main = _main_content(soup)
    if main is None:
        content = ""
    elif format == "text":
        content = _to_text(main)
    else:
        content = _to_markdown(main)

    result: dict[str, Any] = {"url": base_url, "title": title, "content": content}
    if include_images:
        images = []
        for img in (main or soup).find_all("img", src=True):
            src = urljoin(base_url, img["src"])
            if src not in images:
                images.append(src)
        result["images"] = images
    if favicon is not None:
        result["favicon"] = favicon

    logger.debug(f"Extracted {len(content)} chars from {base_url}")
    return result
