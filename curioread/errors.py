# errors.py
"""Error taxonomy shared by the adapters and the pipeline.

Three families drive every decision the orchestrator makes about a failure:

* ``RetryableError``: transient (network, rate limit, outage). The session
  becomes ``errored`` and may run again.
* ``TerminalError``: will never succeed (content too short, blocked prompt,
  retry budget spent). The session becomes ``skip_by_failure``.
* ``InvalidStateError``: the pipeline found a row in a status it cannot
  handle. Logged at error level and treated as terminal.
"""
import enum
from typing import Optional


class ErrorKind(str, enum.Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"
    INVALID_STATE = "invalid_state"


class PipelineError(Exception):
    kind = ErrorKind.RETRYABLE


class RetryableError(PipelineError):
    kind = ErrorKind.RETRYABLE


class TerminalError(PipelineError):
    kind = ErrorKind.TERMINAL


class InvalidStateError(PipelineError):
    kind = ErrorKind.INVALID_STATE


class ArticleRetryableError(RetryableError):
    def __init__(self, message: str, article_id: int, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.article_id = article_id
        self.cause = cause


class ArticleTerminalError(TerminalError):
    def __init__(self, message: str, article_id: int, article_status: str = ""):
        super().__init__(message)
        self.article_id = article_id
        self.article_status = article_status


class QuizRetryableError(RetryableError):
    def __init__(self, message: str, curiosity_quiz_id: int, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.curiosity_quiz_id = curiosity_quiz_id
        self.cause = cause


class QuizTerminalError(TerminalError):
    def __init__(self, message: str, curiosity_quiz_id: int, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.curiosity_quiz_id = curiosity_quiz_id
        self.cause = cause


class StatusTransitionError(InvalidStateError):
    def __init__(self, entity: str, entity_id, current, new):
        super().__init__(f"Illegal {entity} {entity_id} transition {current} -> {new}")
        self.entity = entity
        self.entity_id = entity_id


class StorageError(RetryableError):
    pass


class ContentRejectedError(TerminalError):
    """Content the store refuses to keep (for example an oversized PDF)."""


# Scrape codes that will never succeed on a second attempt.
TERMINAL_SCRAPE_CODES = {
    "PDF_EMPTY",
    "PDF_TOO_LARGE",
    "READABILITY_EMPTY",
    "READABILITY_EMPTY_CONTENT",
    "CONTENT_TOO_SHORT",
    "INVALID_URL",
}


class ScrapeError(PipelineError):
    def __init__(self, message: str, code: str, url: str, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.url = url
        self.status = status

    @property
    def retryable(self) -> bool:
        if self.code in TERMINAL_SCRAPE_CODES:
            return False
        if self.code == "FETCH_FAILED":
            # no status means the request never completed (DNS, timeout, reset)
            return self.status is None or self.status >= 500 or self.status in (408, 429)
        return True

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return ErrorKind.RETRYABLE if self.retryable else ErrorKind.TERMINAL


class LLMError(RetryableError):
    pass


class LLMTerminalError(LLMError):
    kind = ErrorKind.TERMINAL


def classify(exc: BaseException) -> ErrorKind:
    """Map any exception raised inside a pipeline step to an ErrorKind.

    Anything outside the taxonomy (including SQLAlchemy storage errors) is
    retryable; the retry budget decides when to give up.
    """
    if isinstance(exc, PipelineError):
        return exc.kind
    return ErrorKind.RETRYABLE


def truncate(message: str, limit: int = 500) -> str:
    return (message or "")[:limit]
