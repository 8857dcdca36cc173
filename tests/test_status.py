from curioread.errors import (
    ErrorKind, LLMError, LLMTerminalError, ScrapeError, StatusTransitionError, classify, truncate,
)
from curioread.status import (
    TRANSITIONS, ArticleStatus, CuriosityQuizStatus, QuizStatus, SessionStatus,
    can_transition, session_status_for, sources_for,
)


def test_every_status_has_a_transition_entry():
    for enum_cls, table in TRANSITIONS.items():
        assert set(table) == set(enum_cls)


def test_legal_and_illegal_moves():
    assert can_transition(ArticleStatus.PENDING, ArticleStatus.SCRAPING)
    assert can_transition(SessionStatus.BOOKMARKED, SessionStatus.PENDING)
    assert not can_transition(QuizStatus.READY, QuizStatus.PENDING)
    assert not can_transition(SessionStatus.SKIP_BY_FAILURE, SessionStatus.PENDING)


def test_rewriting_the_same_status_is_allowed():
    assert can_transition(SessionStatus.ERRORED, SessionStatus.ERRORED)
    assert can_transition(QuizStatus.READY, QuizStatus.READY)


def test_statuses_of_different_entities_never_mix():
    # "pending" == "pending" as strings, but an article is not a quiz
    assert not can_transition(ArticleStatus.PENDING, QuizStatus.PROCESSING)


def test_sources_for_session_ready():
    assert sources_for(SessionStatus.READY) == {
        SessionStatus.PENDING, SessionStatus.PROCESSING, SessionStatus.ERRORED, SessionStatus.READY,
    }


def test_session_status_mirrors_question_set():
    assert session_status_for(CuriosityQuizStatus.READY) is SessionStatus.READY
    assert session_status_for(CuriosityQuizStatus.FAILED) is SessionStatus.ERRORED
    assert session_status_for(CuriosityQuizStatus.SKIP_BY_FAILURE) is SessionStatus.SKIP_BY_FAILURE
    assert session_status_for(CuriosityQuizStatus.PROCESSING) is SessionStatus.PROCESSING


def test_scrape_error_classification():
    url = "https://example.com/a"
    assert ScrapeError("x", code="FETCH_FAILED", url=url).retryable
    assert ScrapeError("x", code="FETCH_FAILED", url=url, status=503).retryable
    assert ScrapeError("x", code="FETCH_FAILED", url=url, status=429).retryable
    assert not ScrapeError("x", code="FETCH_FAILED", url=url, status=404).retryable
    assert not ScrapeError("x", code="CONTENT_TOO_SHORT", url=url).retryable
    assert classify(ScrapeError("x", code="READABILITY_EMPTY", url=url)) is ErrorKind.TERMINAL


def test_classify():
    assert classify(ValueError("boom")) is ErrorKind.RETRYABLE
    assert classify(LLMError("rate limited")) is ErrorKind.RETRYABLE
    assert classify(LLMTerminalError("blocked")) is ErrorKind.TERMINAL
    assert classify(StatusTransitionError("quiz", 1, "ready", "pending")) is ErrorKind.INVALID_STATE


def test_truncate():
    assert truncate("x" * 600) == "x" * 500
    assert truncate(None) == ""
