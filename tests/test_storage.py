import pytest

from curioread.errors import ContentRejectedError, StorageError
from curioread.storage import ContentStore, fingerprint


def test_article_bundle_round_trip(store):
    stored = store.store_article_bundle(7, "https://example.com/a", "<p>hello</p>", "hello")
    assert stored.path == "article/7"
    assert stored.content_hash == fingerprint("hello")
    assert stored.metadata["files"]["text"]["path"] == "article/7/content.txt"
    assert store.get("article/7/content.html") == b"<p>hello</p>"
    assert store.load_text(stored.path, stored.metadata) == "hello"
    assert store.has_content(stored.path, stored.metadata)


def test_load_text_without_metadata_uses_default_layout(store):
    store.store_article_bundle(3, "https://example.com/b", "<p>x</p>", "plain text")
    assert store.load_text("article/3") == "plain text"


def test_missing_content(store):
    assert store.get("article/404/content.txt") is None
    assert store.load_text("article/404") is None
    assert not store.has_content("article/404")
    assert not store.has_content(None)


def test_pdf_is_stored_by_url(store):
    stored = store.store_pdf(b"%PDF-1.4 data", "https://Docs.example.com/paper.pdf")
    assert stored.path.startswith("pdf/by-url/docs-example-com/")
    assert stored.path.endswith(".pdf")
    assert stored.metadata["media_type"] == "application/pdf"
    assert store.has_content(stored.path, stored.metadata)


def test_oversized_pdf_is_rejected(tmp_path):
    small = ContentStore(tmp_path, max_pdf_size_bytes=10)
    with pytest.raises(ContentRejectedError):
        small.store_pdf(b"x" * 11, "https://example.com/big.pdf")


def test_paths_cannot_escape_the_store(store):
    with pytest.raises(StorageError):
        store.put("../outside.txt", b"nope")
