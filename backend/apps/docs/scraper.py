"""
Web page ingestion source.

Fetches a page, drops script and style elements and returns its visible
text with the page title, ready to be stored as a Document.
"""
import logging
import re
from dataclasses import dataclass
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup
from django.conf import settings

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; FinRAG/1.0)"
MAX_TITLE_LENGTH = 200

_WHITESPACE = re.compile(r'\s+')


class ScrapeError(Exception):
    """Raised when a page cannot be fetched or holds too little text."""
    pass


@dataclass
class ScrapedPage:
    url: str
    title: str
    content: str


def validate_url(url) -> str:
    if not isinstance(url, str) or not url.strip():
        raise ScrapeError("url is required")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ScrapeError("url must be an absolute http(s) URL")
    return url


def extract_page(html: str, url: str) -> ScrapedPage:
    """
    Pull the title and visible body text out of an HTML document.

    Whitespace is collapsed to single spaces and the text is capped at
    SCRAPE_MAX_CHARS. A missing title falls back to the URL's host name.

    Raises:
        ScrapeError: If fewer than SCRAPE_MIN_CHARS characters remain
    """
    soup = BeautifulSoup(html, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()

    body = soup.body or soup
    content = _WHITESPACE.sub(' ', body.get_text(' ')).strip()

    title = soup.title.get_text(strip=True) if soup.title else ''
    title = title or urlparse(url).hostname or url

    min_chars = getattr(settings, 'SCRAPE_MIN_CHARS', 100)
    if len(content) < min_chars:
        raise ScrapeError("Insufficient content extracted from URL")

    max_chars = getattr(settings, 'SCRAPE_MAX_CHARS', 50000)
    return ScrapedPage(url=url, title=title[:MAX_TITLE_LENGTH], content=content[:max_chars])


def scrape_url(url) -> ScrapedPage:
    """
    Fetch ``url`` and extract its text.

    Raises:
        ScrapeError: On an invalid URL, a network failure, a non-2xx reply
            or a page without enough text
    """
    url = validate_url(url)
    timeout = getattr(settings, 'SCRAPE_TIMEOUT', 30)

    logger.info(f"Scraping {url}")
    try:
        response = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=timeout)
        response.raise_for_status()
    except requests.HTTPError as e:
        raise ScrapeError(f"Failed to fetch URL: {e.response.status_code}") from e
    except requests.RequestException as e:
        logger.warning(f"Could not fetch {url}: {e}")
        raise ScrapeError("Failed to fetch URL") from e

    page = extract_page(response.text, url)
    logger.info(f"Extracted {len(page.content)} chars from {url} ({page.title})")
    return page
