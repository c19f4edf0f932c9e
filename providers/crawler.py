"""
Web page fetcher for crawl intake: downloads a page and extracts its main text.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from errors import ProviderUnavailable, RateLimited, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5,zh-CN;q=0.3",
}

# Tried in order; the first match is taken as the article body
CONTENT_SELECTORS = ["article", "main", ".content", "#content", ".post", ".article"]
STRIP_TAGS = ["script", "style", "noscript", "nav", "footer", "header", "aside", "form"]


@dataclass
class FetchedPage:
    url: str
    title: str
    text: str
    source_name: str


def validate_url(url: Optional[str]) -> str:
    """
    Check that a URL is absolute http(s).

    Raises:
        ValidationError: for empty, relative or non-http URLs
    """
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid URL: {url or '<empty>'}", field="url")
    return url


def extract_main_text(html: str) -> tuple[str, str]:
    """
    Pull the title and readable body text out of an HTML document.

    Returns:
        (title, text) with blank lines removed from text
    """
    soup = BeautifulSoup(html, "html.parser")
    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()

    for tag in soup(STRIP_TAGS):
        tag.decompose()

    main_content = None
    for selector in CONTENT_SELECTORS:
        main_content = soup.select_one(selector)
        if main_content:
            break

    if main_content:
        text = main_content.get_text(separator="\n", strip=True)
    else:
        text = soup.get_text(separator="\n", strip=True)

    if not title:
        heading = soup.find("h1")
        if heading:
            title = heading.get_text(strip=True)

    lines = [line.strip() for line in text.split("\n") if line.strip()]
    return title, "\n".join(lines)


class WebPageFetcher:
    """Fetches pages over HTTP and returns their extracted text."""

    name = "web"

    def __init__(self, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    async def fetch(self, url: str) -> FetchedPage:
        """
        Download and extract a page.

        Args:
            url: Absolute http(s) URL

        Returns:
            FetchedPage with title, text and the host as source name

        Raises:
            ValidationError: if the URL is invalid
            ProviderUnavailable: on network errors or non-2xx responses
            RateLimited: on HTTP 429
        """
        url = validate_url(url)
        try:
            if self._client is not None:
                response = await self._client.get(url, headers=DEFAULT_HEADERS, follow_redirects=True, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    response = await client.get(url, headers=DEFAULT_HEADERS)
        except httpx.HTTPError as e:
            raise ProviderUnavailable(self.name, f"could not fetch {url}: {e}")

        if response.status_code == 429:
            raise RateLimited(self.name)
        if response.status_code >= 400:
            raise ProviderUnavailable(self.name, f"HTTP {response.status_code} for {url}")

        title, text = extract_main_text(response.text)
        host = urlparse(str(response.url)).netloc or urlparse(url).netloc
        logger.info(f"Fetched {url}: {len(text)} characters of text")
        return FetchedPage(url=url, title=title or host, text=text, source_name=host)
