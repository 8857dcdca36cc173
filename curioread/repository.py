# repository.py
"""Persistent work items and the conditional writes that coordinate them.

Every status change goes through ``UPDATE ... WHERE id = :id AND status IN
(...)``; a rowcount of 1 means this caller won. That single statement is the
only cross-worker coordination in the system, so two workers can race on the
same article or question set and exactly one of them proceeds.
"""
import logging
import secrets
import string
from datetime import timedelta
from typing import Iterable, Optional, Tuple

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from curioread.errors import StatusTransitionError
from curioread.models import Article, Quiz, CuriosityQuiz, ReadingSession
from curioread.status import (
    ArticleStatus, QuizStatus, CuriosityQuizStatus, SessionStatus, StudyStatus,
    OCCUPYING_STATUSES, ACTIVE_STUDY_STATUSES, can_transition, sources_for,
)
from curioread.utils import utcnow

logger = logging.getLogger(__name__)

ENTITY_NAMES = {
    Article: "article",
    Quiz: "quiz",
    CuriosityQuiz: "curiosity_quiz",
    ReadingSession: "session",
}

# kind -> (model, queued status, in-flight status)
CLAIMABLE = {
    "article": (Article, ArticleStatus.PENDING, ArticleStatus.SCRAPING),
    "quiz": (Quiz, QuizStatus.PENDING, QuizStatus.PROCESSING),
    "curiosity_quiz": (CuriosityQuiz, CuriosityQuizStatus.PENDING, CuriosityQuizStatus.PROCESSING),
    "session": (ReadingSession, SessionStatus.PENDING, SessionStatus.PROCESSING),
}

TOKEN_ALPHABET = string.ascii_letters + string.digits + "_-"


# -----------------------------------------------------------------------------
# Generic primitives
# -----------------------------------------------------------------------------
def get_by_id(db: Session, model, row_id: int):
    """Load a row, overwriting anything stale in the identity map."""
    return db.get(model, row_id, populate_existing=True)


def _conditional_update(db: Session, model, row_id: int, conditions: Iterable, values: dict) -> bool:
    stmt = (
        update(model)
        .where(model.id == row_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount == 1


def _as_tuple(statuses) -> tuple:
    if isinstance(statuses, (list, tuple, set, frozenset)):
        return tuple(statuses)
    return (statuses,)


def compare_and_set_status(db: Session, model, row_id: int, expected, new, **values) -> bool:
    """Move ``row_id`` to ``new`` only if it is currently in ``expected``.

    Raises StatusTransitionError when any expected status cannot legally move
    to ``new``; returns False when the row was not in an expected status.
    """
    expected = _as_tuple(expected)
    for current in expected:
        if not can_transition(current, new):
            raise StatusTransitionError(ENTITY_NAMES[model], row_id, current.value, new.value)
    return _conditional_update(db, model, row_id, [model.status.in_(expected)], dict(values, status=new))


def update_status(db: Session, model, row_id: int, new, **values) -> bool:
    """Move to ``new`` from whichever status may legally reach it."""
    return _conditional_update(
        db, model, row_id, [model.status.in_(tuple(sources_for(new)))], dict(values, status=new)
    )


def claim_next_pending(db: Session, kind: str):
    """Atomically take the oldest pending item of ``kind``; None when idle.

    A caller that loses the race for a candidate simply looks again, so the
    loop ends either with a claimed row or an empty queue.
    """
    model, queued, in_flight = CLAIMABLE[kind]
    while True:
        candidate = (
            db.query(model.id)
            .filter(model.status == queued)
            .order_by(model.created_at, model.id)
            .first()
        )
        if candidate is None:
            return None
        if compare_and_set_status(db, model, candidate.id, queued, in_flight):
            logger.debug("Claimed %s %s", kind, candidate.id)
            return get_by_id(db, model, candidate.id)


# -----------------------------------------------------------------------------
# Articles / quizzes / question sets
# -----------------------------------------------------------------------------
def _get_or_insert(db: Session, model, lookup: dict, defaults: dict):
    row = db.query(model).filter_by(**lookup).first()
    if row is not None:
        return row
    try:
        row = model(**lookup, **defaults)
        db.add(row)
        db.commit()
        return row
    except IntegrityError:
        # lost a concurrent insert; the winner's row is the canonical one
        db.rollback()
        return db.query(model).filter_by(**lookup).populate_existing().one()


def ensure_article(db: Session, normalized_url: str, original_url: str) -> Article:
    return _get_or_insert(
        db, Article,
        {"normalized_url": normalized_url},
        {"original_url": original_url, "status": ArticleStatus.PENDING, "meta": {}, "storage_metadata": {}},
    )


def ensure_quiz(db: Session, article_id: int) -> Quiz:
    return _get_or_insert(db, Quiz, {"article_id": article_id}, {"status": QuizStatus.PENDING})


def ensure_curiosity_quiz(db: Session, quiz_id: int) -> CuriosityQuiz:
    return _get_or_insert(
        db, CuriosityQuiz, {"quiz_id": quiz_id}, {"status": CuriosityQuizStatus.PENDING, "retry_count": 0}
    )


def get_curiosity_quiz_by_quiz_id(db: Session, quiz_id: int) -> Optional[CuriosityQuiz]:
    return db.query(CuriosityQuiz).filter(CuriosityQuiz.quiz_id == quiz_id).populate_existing().first()


def claim_article_for_scraping(db: Session, article_id: int, stale_after: timedelta) -> bool:
    """Take the scrape lease on an article.

    Claimable from pending/stale/failed/ready (a ready row only reaches here
    when its content has aged out), or from a ``scraping`` lease whose holder
    has gone quiet for longer than ``stale_after``.
    """
    claimable = (ArticleStatus.PENDING, ArticleStatus.STALE, ArticleStatus.FAILED, ArticleStatus.READY)
    if compare_and_set_status(db, Article, article_id, claimable, ArticleStatus.SCRAPING, error_message=None):
        return True
    cutoff = utcnow() - stale_after
    reclaimed = _conditional_update(
        db, Article, article_id,
        [Article.status == ArticleStatus.SCRAPING, Article.updated_at < cutoff],
        {"status": ArticleStatus.SCRAPING, "retry_count": Article.retry_count + 1, "updated_at": utcnow()},
    )
    if reclaimed:
        logger.warning("Reclaimed abandoned scrape lease on article %s", article_id)
    return reclaimed


def claim_curiosity_quiz(db: Session, cq_id: int, max_retries: int, stale_after: timedelta) -> bool:
    """Take the generation lease on a question set (pending, failed with budget
    left, or an abandoned ``processing`` lease)."""
    for current in (CuriosityQuizStatus.PENDING, CuriosityQuizStatus.FAILED):
        if not can_transition(current, CuriosityQuizStatus.PROCESSING):
            raise StatusTransitionError("curiosity_quiz", cq_id, current.value, "processing")
    claimed = _conditional_update(
        db, CuriosityQuiz, cq_id,
        [
            CuriosityQuiz.status.in_((CuriosityQuizStatus.PENDING, CuriosityQuizStatus.FAILED)),
            CuriosityQuiz.retry_count < max_retries,
        ],
        {"status": CuriosityQuizStatus.PROCESSING},
    )
    if claimed:
        return True
    cutoff = utcnow() - stale_after
    reclaimed = _conditional_update(
        db, CuriosityQuiz, cq_id,
        [
            CuriosityQuiz.status == CuriosityQuizStatus.PROCESSING,
            CuriosityQuiz.updated_at < cutoff,
            CuriosityQuiz.retry_count < max_retries,
        ],
        {"status": CuriosityQuizStatus.PROCESSING, "updated_at": utcnow()},
    )
    if reclaimed:
        logger.warning("Reclaimed abandoned generation lease on curiosity quiz %s", cq_id)
    return reclaimed


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------
def new_session_token(length: int = 16) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def get_session_by_token(db: Session, token: str) -> Optional[ReadingSession]:
    return db.query(ReadingSession).filter(ReadingSession.session_token == token).populate_existing().first()


def get_or_create_session(db: Session, user_id: str, normalized_url: str, article_url: Optional[str] = None,
                          token_length: int = 16) -> Tuple[ReadingSession, bool]:
    """Find the user's session for ``normalized_url`` or create one that keeps
    ``article_url`` exactly as submitted."""
    existing = (
        db.query(ReadingSession)
        .filter(ReadingSession.user_id == user_id, ReadingSession.normalized_url == normalized_url)
        .populate_existing()
        .first()
    )
    if existing is not None:
        return existing, False
    row = _get_or_insert(
        db, ReadingSession,
        {"user_id": user_id, "normalized_url": normalized_url},
        {
            "article_url": article_url or normalized_url,
            "session_token": new_session_token(token_length),
            "status": SessionStatus.BOOKMARKED,
            "study_status": StudyStatus.NOT_STARTED,
            "meta": {},
        },
    )
    return row, True


def reclaim_stale_session(db: Session, session_id: int, stale_after: timedelta) -> bool:
    """Take over a ``processing`` session whose worker has gone quiet.

    Refreshes ``updated_at`` in the same statement, so only one caller wins
    and the session is not reclaimed again until it goes quiet once more.
    """
    cutoff = utcnow() - stale_after
    reclaimed = _conditional_update(
        db, ReadingSession, session_id,
        [ReadingSession.status == SessionStatus.PROCESSING, ReadingSession.updated_at < cutoff],
        {"status": SessionStatus.PROCESSING, "updated_at": utcnow()},
    )
    if reclaimed:
        logger.warning("Reclaimed stuck processing session %s", session_id)
    return reclaimed


def claim_stale_session(db: Session, stale_after: timedelta) -> Optional[ReadingSession]:
    """Oldest ``processing`` session idle past ``stale_after``, reclaimed; None if none."""
    while True:
        candidate = (
            db.query(ReadingSession.id)
            .filter(
                ReadingSession.status == SessionStatus.PROCESSING,
                ReadingSession.updated_at < utcnow() - stale_after,
            )
            .order_by(ReadingSession.updated_at, ReadingSession.id)
            .first()
        )
        if candidate is None:
            return None
        if reclaim_stale_session(db, candidate.id, stale_after):
            return get_by_id(db, ReadingSession, candidate.id)


def update_fields(db: Session, model, row_id: int, **values):
    """Plain column update for non-status fields; returns the refreshed row."""
    if "status" in values:
        raise ValueError("status changes must go through update_status / compare_and_set_status")
    db.execute(
        update(model)
        .where(model.id == row_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return get_by_id(db, model, row_id)


def update_session(db: Session, session_id: int, **values) -> ReadingSession:
    """Quiz link, metadata, study status."""
    return update_fields(db, ReadingSession, session_id, **values)


def set_session_status(db: Session, session_id: int, new: SessionStatus, **values) -> bool:
    return update_status(db, ReadingSession, session_id, new, **values)


def update_sessions_by_quiz_id(db: Session, quiz_id: int, new: SessionStatus) -> int:
    """Fan a status out to every session reading ``quiz_id``.

    Sessions whose current status cannot reach ``new`` are left alone, so a
    late failure never overwrites a session that already finished.
    """
    result = db.execute(
        update(ReadingSession)
        .where(ReadingSession.quiz_id == quiz_id, ReadingSession.status.in_(tuple(sources_for(new))))
        .values(status=new)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def _occupying(model):
    return and_(model.status.in_(OCCUPYING_STATUSES), model.study_status.in_(ACTIVE_STUDY_STATUSES))


def count_occupying(db: Session, user_id: str) -> int:
    return (
        db.query(func.count(ReadingSession.id))
        .filter(ReadingSession.user_id == user_id, _occupying(ReadingSession))
        .scalar()
    )


def oldest_waiting_session(db: Session, user_id: str) -> Optional[ReadingSession]:
    return (
        db.query(ReadingSession)
        .filter(
            ReadingSession.user_id == user_id,
            ReadingSession.status == SessionStatus.BOOKMARKED,
            ReadingSession.study_status != StudyStatus.ARCHIVED,
        )
        .order_by(ReadingSession.created_at, ReadingSession.id)
        .populate_existing()
        .first()
    )


def promote_session(db: Session, session_id: int, user_id: str, capacity: int) -> bool:
    """``bookmarked -> pending`` only while the user still has a free slot.

    The occupancy count is a sub-select inside the same UPDATE, so two
    concurrent promotions cannot both squeeze into the last slot.
    """
    other = aliased(ReadingSession)
    occupied = (
        select(func.count(other.id))
        .where(other.user_id == user_id, _occupying(other))
        .scalar_subquery()
    )
    return _conditional_update(
        db, ReadingSession, session_id,
        [ReadingSession.status == SessionStatus.BOOKMARKED, occupied < capacity],
        {"status": SessionStatus.PENDING},
    )


def list_sessions_for_user(db: Session, user_id: str, limit: int = 100):
    return (
        db.query(ReadingSession)
        .filter(ReadingSession.user_id == user_id)
        .order_by(ReadingSession.created_at.desc(), ReadingSession.id.desc())
        .limit(limit)
        .all()
    )


def ready_sessions(db: Session, user_id: str):
    """Ready, not-yet-archived sessions, oldest first (the badge count)."""
    return (
        db.query(ReadingSession)
        .filter(
            ReadingSession.user_id == user_id,
            ReadingSession.status == SessionStatus.READY,
            ReadingSession.study_status.in_(ACTIVE_STUDY_STATUSES),
        )
        .order_by(ReadingSession.created_at, ReadingSession.id)
        .all()
    )


def stale_processing_sessions(db: Session, user_id: str, stale_after: timedelta):
    """The user's ``processing`` sessions that nobody has touched for ``stale_after``."""
    return (
        db.query(ReadingSession)
        .filter(
            ReadingSession.user_id == user_id,
            ReadingSession.status == SessionStatus.PROCESSING,
            ReadingSession.updated_at < utcnow() - stale_after,
        )
        .order_by(ReadingSession.updated_at, ReadingSession.id)
        .all()
    )
