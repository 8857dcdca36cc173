# utils.py
import re
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
TRACKING_PARAMS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")
DEFAULT_PORTS = {"http": "80", "https": "443"}


def utcnow() -> datetime:
    # naive UTC, matching what SQLite hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_url(raw_url: str) -> str:
    """Canonical form used to deduplicate articles.

    Adds a missing scheme, lowercases the host, drops default ports and the
    fragment, sorts query parameters and trims trailing slashes.
    """
    raw_url = (raw_url or "").strip()
    if not raw_url:
        raise ValueError("URL is empty")
    if not _SCHEME_RE.match(raw_url):
        raw_url = f"https://{raw_url}"

    parts = urlsplit(raw_url)
    if not parts.hostname:
        raise ValueError(f"URL has no host: {raw_url}")

    scheme = parts.scheme.lower()
    host = parts.hostname.lower()
    port = parts.port
    netloc = host if port is None or str(port) == DEFAULT_PORTS.get(scheme) else f"{host}:{port}"
    if parts.username:
        netloc = f"{parts.username}@{netloc}"

    path = parts.path.rstrip("/") or "/"
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((scheme, netloc, path, query, ""))


def strip_tracking(url: str) -> str:
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in TRACKING_PARAMS]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment))


def is_fresh(last_scraped_at: Optional[datetime], storage_path: Optional[str], days: int = 30,
             now: Optional[datetime] = None) -> bool:
    if not last_scraped_at or not storage_path:
        return False
    return (now or utcnow()) - last_scraped_at <= timedelta(days=days)


SCRAPED_FIELDS = ("title", "byline", "excerpt", "length", "siteName", "lang")


def merge_metadata(existing: Optional[dict], scraped: dict) -> dict:
    """Overlay freshly scraped fields on stored metadata; None never wins."""
    merged = dict(existing or {})
    for key in SCRAPED_FIELDS:
        value = scraped.get(key)
        if value is not None:
            merged[key] = value
        else:
            merged.setdefault(key, None)
    return merged


def extract_analysis(metadata: Optional[dict]) -> Optional[dict]:
    """Return the cached analysis block if it looks usable."""
    if not isinstance(metadata, dict):
        return None
    analysis = metadata.get("analysis")
    if not isinstance(analysis, dict):
        return None
    archetype = analysis.get("archetype")
    if isinstance(archetype, dict):
        archetype = archetype.get("label")
    if not isinstance(archetype, str) or not archetype.strip():
        return None
    return analysis


def _option_text(option) -> str:
    if isinstance(option, str):
        return option.strip()
    if isinstance(option, dict):
        return (option.get("text") or "").strip()
    return ""


def normalize_quiz_cards(cards: list) -> list:
    """Curiosity quiz cards -> stored question list."""
    questions = []
    for card in cards or []:
        prompt = (card.get("question") or "").strip()
        options = card.get("options") or []
        if not prompt or not options:
            continue
        answer_index = next((i for i, o in enumerate(options) if o.get("is_correct") is True), 0)
        remediation = card.get("remediation") or {}
        questions.append({
            "id": len(questions) + 1,
            "category": (card.get("format") or "MCQ").upper(),
            "prompt": prompt,
            "options": [
                {"text": _option_text(o), "rationale": (o.get("feedback") or None)} for o in options
            ],
            "answer_index": answer_index,
            "source_anchor": (remediation.get("go_read_anchor") or "").strip() or None,
            "remediation": (remediation.get("body") or "").strip() or None,
        })
    return questions


def normalize_hook_questions(hooks: list) -> list:
    """Legacy hook questions -> stored question list."""
    questions = []
    for hook in (hooks or [])[:10]:
        prompt = (hook.get("question") or hook.get("prompt") or "").strip()
        options = (hook.get("options") or [])[:4]
        if not prompt or not options:
            continue
        answer_index = hook.get("answer_index")
        if not isinstance(answer_index, int) or not 0 <= answer_index < len(options):
            answer_index = 0
        questions.append({
            "id": len(questions) + 1,
            "category": (hook.get("type") or "hook").lower(),
            "prompt": prompt,
            "options": [
                {"text": _option_text(o), "rationale": (o.get("rationale") if isinstance(o, dict) else None)}
                for o in options
            ],
            "answer_index": answer_index,
            "source_anchor": None,
            "remediation": (hook.get("remediation") or "").strip() or None,
        })
    return questions
