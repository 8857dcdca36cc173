# status.py
"""Closed status vocabularies for every pipeline entity.

Each entity gets its own ``str`` enum plus a transition table. The repository
checks every status write against these tables, so an illegal move (for
example ``ready -> pending`` on a quiz) surfaces as an invalid-state error
instead of silently corrupting the state machine.
"""
import enum
from typing import Dict, FrozenSet


class ArticleStatus(str, enum.Enum):
    PENDING = "pending"
    SCRAPING = "scraping"
    READY = "ready"
    STALE = "stale"
    FAILED = "failed"
    SKIP_BY_FAILURE = "skip_by_failure"


class QuizStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    NOT_REQUIRED = "not_required"
    SKIP_BY_ADMIN = "skip_by_admin"
    SKIP_BY_FAILURE = "skip_by_failure"


class CuriosityQuizStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    SKIP_BY_FAILURE = "skip_by_failure"


class SessionStatus(str, enum.Enum):
    BOOKMARKED = "bookmarked"
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERRORED = "errored"
    SKIP_BY_ADMIN = "skip_by_admin"
    SKIP_BY_FAILURE = "skip_by_failure"


class StudyStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    CURIOSITY_IN_PROGRESS = "curiosity_in_progress"
    SCAFFOLD_IN_PROGRESS = "scaffold_in_progress"
    ARCHIVED = "archived"


class ContentMedium(str, enum.Enum):
    HTML = "html"
    PDF = "pdf"
    UNKNOWN = "unknown"


A, Q, C, S = ArticleStatus, QuizStatus, CuriosityQuizStatus, SessionStatus

# Keyed by enum class first: str-valued members of different enums compare
# and hash equal ("pending" == "pending"), so they cannot share one dict.
TRANSITIONS: Dict[type, Dict[enum.Enum, FrozenSet[enum.Enum]]] = {
    ArticleStatus: {
        A.PENDING: frozenset({A.SCRAPING}),
        A.STALE: frozenset({A.SCRAPING}),
        A.FAILED: frozenset({A.SCRAPING}),
        A.SCRAPING: frozenset({A.READY, A.FAILED, A.SKIP_BY_FAILURE}),
        A.READY: frozenset({A.SCRAPING, A.STALE}),
        A.SKIP_BY_FAILURE: frozenset(),
    },
    QuizStatus: {
        Q.PENDING: frozenset({Q.PROCESSING, Q.NOT_REQUIRED, Q.SKIP_BY_ADMIN}),
        Q.PROCESSING: frozenset({Q.READY, Q.FAILED, Q.SKIP_BY_FAILURE}),
        Q.FAILED: frozenset({Q.PROCESSING, Q.SKIP_BY_FAILURE, Q.SKIP_BY_ADMIN}),
        Q.READY: frozenset(),
        Q.NOT_REQUIRED: frozenset(),
        Q.SKIP_BY_ADMIN: frozenset(),
        Q.SKIP_BY_FAILURE: frozenset(),
    },
    CuriosityQuizStatus: {
        C.PENDING: frozenset({C.PROCESSING}),
        C.PROCESSING: frozenset({C.READY, C.FAILED, C.SKIP_BY_FAILURE}),
        C.FAILED: frozenset({C.PROCESSING, C.SKIP_BY_FAILURE}),
        C.READY: frozenset(),
        C.SKIP_BY_FAILURE: frozenset(),
    },
    SessionStatus: {
        S.BOOKMARKED: frozenset({S.PENDING, S.SKIP_BY_ADMIN}),
        S.PENDING: frozenset({S.PROCESSING, S.READY, S.ERRORED, S.SKIP_BY_FAILURE, S.SKIP_BY_ADMIN}),
        S.PROCESSING: frozenset({S.READY, S.ERRORED, S.SKIP_BY_FAILURE, S.SKIP_BY_ADMIN}),
        S.ERRORED: frozenset({S.PENDING, S.PROCESSING, S.READY, S.SKIP_BY_FAILURE, S.SKIP_BY_ADMIN}),
        S.READY: frozenset(),
        S.SKIP_BY_ADMIN: frozenset(),
        S.SKIP_BY_FAILURE: frozenset(),
    },
}

# Sessions that hold one of the user's queue slots.
OCCUPYING_STATUSES = (S.READY, S.PENDING, S.PROCESSING, S.ERRORED)
ACTIVE_STUDY_STATUSES = (StudyStatus.NOT_STARTED, StudyStatus.CURIOSITY_IN_PROGRESS)

# Session states from which the orchestrator is allowed to (re)start work.
RUNNABLE_SESSION_STATUSES = (S.PENDING, S.PROCESSING, S.ERRORED)


def can_transition(current: enum.Enum, new: enum.Enum) -> bool:
    """Writing the current status again is always allowed (idempotent write)."""
    if type(current) is not type(new):
        return False
    if current is new:
        return True
    return new in TRANSITIONS[type(current)][current]


def sources_for(new: enum.Enum) -> FrozenSet[enum.Enum]:
    """Every status of the same entity that may legally move to ``new``."""
    table = TRANSITIONS[type(new)]
    return frozenset(status for status in table if can_transition(status, new))


def session_status_for(cq_status: CuriosityQuizStatus) -> SessionStatus:
    """Mirror a question-set status onto the sessions that read it."""
    if cq_status is C.READY:
        return S.READY
    if cq_status is C.SKIP_BY_FAILURE:
        return S.SKIP_BY_FAILURE
    if cq_status is C.FAILED:
        return S.ERRORED
    return S.PROCESSING
