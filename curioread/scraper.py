# scraper.py
import logging
from dataclasses import dataclass, field
from typing import Optional, Union
from urllib.parse import urlsplit

import requests
from bs4 import BeautifulSoup

from curioread.errors import ScrapeError
from curioread.utils import strip_tracking

logger = logging.getLogger(__name__)

# Browser-like headers so publishers don't block us
HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:118.0) "
        "Gecko/20100101 Firefox/118.0"
    ),
    "Accept": "text/html,application/xhtml+xml,application/pdf;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}

# Tried in order; the first match with enough text wins
CONTENT_SELECTORS = (
    "article",
    "main",
    "[role=main]",
    "#mw-content-text",
    ".post-content",
    ".entry-content",
    ".article-body",
    ".content",
)
NOISE_TAGS = ["script", "style", "noscript", "nav", "header", "footer", "aside", "form", "iframe"]

MIN_TEXT_CHARS = 300
MAX_TEXT_CHARS = 60000


@dataclass
class ScrapedArticle:
    normalized_url: str
    text: str
    html: str
    metadata: dict = field(default_factory=dict)
    kind: str = "article"


@dataclass
class ScrapedPdf:
    normalized_url: str
    buffer: bytes
    metadata: dict = field(default_factory=dict)
    kind: str = "pdf"


ScrapeResult = Union[ScrapedArticle, ScrapedPdf]


def _is_pdf(content_type: Optional[str], url: str) -> bool:
    if content_type and "application/pdf" in content_type.lower():
        return True
    return urlsplit(url).path.lower().endswith(".pdf")


def _meta(soup: BeautifulSoup, *names: str) -> Optional[str]:
    for name in names:
        tag = soup.find("meta", attrs={"property": name}) or soup.find("meta", attrs={"name": name})
        if tag and tag.get("content"):
            return tag["content"].strip()
    return None


def _pick_content(soup: BeautifulSoup):
    for selector in CONTENT_SELECTORS:
        node = soup.select_one(selector)
        if node and len(node.get_text(" ", strip=True)) > MIN_TEXT_CHARS:
            return node
    return soup.body or soup


class Scraper:
    """HTTP fetch + readable-content extraction. Raises ScrapeError."""

    def __init__(self, timeout: float = 20, min_text_chars: int = MIN_TEXT_CHARS, session=None):
        self.timeout = timeout
        self.min_text_chars = min_text_chars
        self.http = session or requests.Session()

    def _fetch(self, url: str) -> requests.Response:
        try:
            resp = self.http.get(url, headers=HEADERS, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise ScrapeError(f"Failed to fetch article: {e}", code="FETCH_FAILED", url=url) from e
        if resp.status_code != 200:
            raise ScrapeError(
                f"Failed to fetch article (HTTP {resp.status_code})",
                code="FETCH_FAILED",
                url=url,
                status=resp.status_code,
            )
        return resp

    def scrape(self, url: str) -> ScrapeResult:
        target = strip_tracking(url)
        resp = self._fetch(target)
        final_url = strip_tracking(resp.url or target)

        if _is_pdf(resp.headers.get("content-type"), final_url):
            return self._pdf(resp.content, final_url)
        return self._article(resp.text, final_url)

    def _pdf(self, data: bytes, url: str) -> ScrapedPdf:
        if not data:
            raise ScrapeError("PDF response was empty.", code="PDF_EMPTY", url=url)
        return ScrapedPdf(
            normalized_url=url,
            buffer=data,
            metadata={
                "title": None,
                "byline": None,
                "excerpt": f"PDF content fetched from {url}",
                "length": len(data),
                "siteName": urlsplit(url).hostname,
                "lang": None,
            },
        )

    def _article(self, html: str, url: str) -> ScrapedArticle:
        soup = BeautifulSoup(html, "html.parser")
        title_tag = soup.find("h1")
        title = (
            _meta(soup, "og:title", "twitter:title")
            or (soup.title.get_text(strip=True) if soup.title else None)
            or (title_tag.get_text(strip=True) if title_tag else None)
        )
        lang = soup.html.get("lang") if soup.html else None
        byline = _meta(soup, "author", "article:author")
        excerpt = _meta(soup, "description", "og:description")
        site_name = _meta(soup, "og:site_name") or urlsplit(url).hostname

        for tag in soup(NOISE_TAGS):
            tag.decompose()

        if not soup.get_text(strip=True):
            raise ScrapeError("Unable to extract article content.", code="READABILITY_EMPTY", url=url)
        content = _pick_content(soup)

        # Gather paragraphs + headings
        parts = []
        for el in content.select("p, h2, h3, h4, li, blockquote"):
            text = el.get_text(" ", strip=True)
            if text:
                parts.append(text)
        text_blob = "\n".join(parts) or content.get_text("\n", strip=True)
        html_content = str(content).strip()

        if not text_blob.strip() or not html_content:
            raise ScrapeError("Extracted content was empty.", code="READABILITY_EMPTY_CONTENT", url=url)
        if len(text_blob) <= self.min_text_chars:
            raise ScrapeError(
                f"Article text appears too short ({len(text_blob)} chars).",
                code="CONTENT_TOO_SHORT",
                url=url,
            )

        # Limit size for LLM cost
        if len(text_blob) > MAX_TEXT_CHARS:
            text_blob = text_blob[:MAX_TEXT_CHARS]

        logger.info("Scraped %s (%d chars)", url, len(text_blob))
        return ScrapedArticle(
            normalized_url=url,
            text=text_blob,
            html=html_content,
            metadata={
                "title": title,
                "byline": byline,
                "excerpt": excerpt or text_blob[:200],
                "length": len(text_blob),
                "siteName": site_name,
                "lang": lang,
            },
        )
