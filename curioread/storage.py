# storage.py
"""Filesystem blob store for scraped article bodies.

Layout under the store root::

    article/<article_id>/content.html
    article/<article_id>/content.txt
    pdf/by-url/<host>/<sha256(url)>.pdf

Paths handed back to callers are relative to the root so rows stay valid if
the store moves.
"""
import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from curioread.errors import ContentRejectedError, StorageError

logger = logging.getLogger(__name__)


def fingerprint(value) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()


def _sanitize_host(url: str) -> str:
    host = urlsplit(url).hostname or ""
    return re.sub(r"[^a-z0-9-]", "-", host.lower()) or "unknown-host"


@dataclass
class StoredContent:
    path: str
    content_hash: str
    metadata: dict = field(default_factory=dict)


class ContentStore:
    def __init__(self, root, max_pdf_size_bytes: int = 25 * 1024 * 1024):
        self.root = Path(root)
        self.max_pdf_size_bytes = max_pdf_size_bytes

    def _resolve(self, key: str) -> Path:
        target = (self.root / key).resolve()
        if self.root.resolve() not in target.parents:
            raise StorageError(f"Refusing to touch path outside the store: {key}")
        return target

    def put(self, key: str, data: bytes) -> str:
        target = self._resolve(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(target.suffix + ".tmp")
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e
        return key

    def get(self, path: str) -> Optional[bytes]:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def store_article_bundle(self, article_id: int, normalized_url: str, html: str, text: str) -> StoredContent:
        base = f"article/{article_id}"
        html_bytes = html.encode("utf-8")
        text_bytes = text.encode("utf-8")
        html_path = self.put(f"{base}/content.html", html_bytes)
        text_path = self.put(f"{base}/content.txt", text_bytes)
        return StoredContent(
            path=base,
            content_hash=fingerprint(text_bytes),
            metadata={
                "size_bytes": len(html_bytes) + len(text_bytes),
                "url_fingerprint": fingerprint(normalized_url),
                "media_type": "text/html+plain",
                "files": {
                    "html": {"path": html_path, "size_bytes": len(html_bytes), "content_type": "text/html"},
                    "text": {"path": text_path, "size_bytes": len(text_bytes), "content_type": "text/plain"},
                },
            },
        )

    def store_pdf(self, data: bytes, normalized_url: str) -> StoredContent:
        if len(data) > self.max_pdf_size_bytes:
            raise ContentRejectedError(
                f"PDF exceeds limit ({len(data)} bytes > {self.max_pdf_size_bytes})"
            )
        url_hash = fingerprint(normalized_url)
        path = self.put(f"pdf/by-url/{_sanitize_host(normalized_url)}/{url_hash}.pdf", data)
        return StoredContent(
            path=path,
            content_hash=fingerprint(data),
            metadata={
                "size_bytes": len(data),
                "url_fingerprint": url_hash,
                "media_type": "application/pdf",
            },
        )

    def load_text(self, storage_path: str, storage_metadata: Optional[dict] = None) -> Optional[str]:
        """Read the plain-text rendition of a stored article, if there is one."""
        if not storage_path:
            return None
        files = (storage_metadata or {}).get("files") or {}
        if files.get("text", {}).get("path"):
            path = files["text"]["path"]
        elif storage_path.endswith((".txt", ".md")):
            path = storage_path
        else:
            path = f"{storage_path.rstrip('/')}/content.txt"
        data = self.get(path)
        if data is None:
            logger.warning("Stored text missing at %s", path)
            return None
        return data.decode("utf-8")

    def has_content(self, storage_path: Optional[str], storage_metadata: Optional[dict] = None) -> bool:
        if not storage_path:
            return False
        if (storage_metadata or {}).get("media_type") == "application/pdf":
            return self.get(storage_path) is not None
        return self.load_text(storage_path, storage_metadata) is not None
