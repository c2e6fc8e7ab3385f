from __future__ import annotations

import logging
from http import client as http_client
from urllib import error, request

from bs4 import BeautifulSoup

from kku_assistant.errors import FetchFailure

logger = logging.getLogger(__name__)

TEXT_ELEMENTS = ["p", "h1", "h2", "h3", "li"]
USER_AGENT = "kku-assistant/1.0"


def _fetch_html(url: str, timeout: float | None = None) -> str:
    req = request.Request(url, headers={"User-Agent": USER_AGENT}, method="GET")
    try:
        with request.urlopen(req, timeout=timeout) as response:
            charset = response.headers.get_content_charset() or "utf-8"
            return response.read().decode(charset, errors="replace")
    except error.HTTPError as exc:
        raise FetchFailure(f"GET {url} failed with HTTP {exc.code}.") from exc
    except (error.URLError, OSError, ValueError, LookupError, http_client.HTTPException) as exc:
        raise FetchFailure(f"GET {url} failed: {exc}") from exc


def extract_page_text(html_text: str) -> str:
    """Join the text of paragraph, heading and list elements in document order."""
    soup = BeautifulSoup(html_text, "html.parser")
    body = soup.body or soup
    return "".join(f"{element.get_text()}\n" for element in body.find_all(TEXT_ELEMENTS))


def scrape_website(url: str, timeout: float | None = None) -> str:
    return extract_page_text(_fetch_html(url, timeout=timeout))


def scrape_website_or_none(url: str, timeout: float | None = None) -> str | None:
    try:
        return scrape_website(url, timeout=timeout)
    except FetchFailure as exc:
        logger.warning("Website scrape skipped: %s", exc)
        return None
