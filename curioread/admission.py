# admission.py
"""Per-user reading queue.

A user has at most ``QUEUE_CAPACITY`` (2) sessions occupying the queue at
once; everything else waits as ``bookmarked``. A slot opens when the user
archives a session or its processing ends in a final skip, at which point
the oldest waiting session is promoted.

Promotion is a single conditional UPDATE (see ``repository.promote_session``)
so two requests racing for the last slot cannot both get it.
"""
import logging
from dataclasses import dataclass
from datetime import timezone
from typing import List, Optional, Tuple

from curioread import repository as repo
from curioread.config import Settings
from curioread.db import get_session
from curioread.models import ReadingSession
from curioread.pipeline import Orchestrator
from curioread.status import (
    SessionStatus, StudyStatus, CuriosityQuizStatus, OCCUPYING_STATUSES, ACTIVE_STUDY_STATUSES,
)
from curioread.utils import normalize_url
from curioread.worker import TaskRunner

logger = logging.getLogger(__name__)

FAILED_SESSION_STATUSES = (SessionStatus.ERRORED, SessionStatus.SKIP_BY_FAILURE)
# final statuses that stop occupying a slot without an archive
RELEASING_STATUSES = (SessionStatus.SKIP_BY_FAILURE, SessionStatus.SKIP_BY_ADMIN)


@dataclass
class SubmitResult:
    session: ReadingSession
    worker_invoked: bool


def failure_reason(session: ReadingSession) -> Optional[str]:
    if session.status not in FAILED_SESSION_STATUSES:
        return None
    last_error = (session.meta or {}).get("lastError") or {}
    return last_error.get("reason")


def _timestamp_ms(session: ReadingSession) -> int:
    return int(session.created_at.replace(tzinfo=timezone.utc).timestamp() * 1000)


def _article_title(session: ReadingSession) -> Optional[str]:
    article = session.quiz.article if session.quiz is not None else None
    title = ((article.meta or {}).get("title") if article is not None else None) or None
    return title or (session.meta or {}).get("title") or None


def _bookmark(session: ReadingSession) -> dict:
    last_error = (session.meta or {}).get("lastError") or {}
    failed = session.status in FAILED_SESSION_STATUSES
    return {
        "session_token": session.session_token,
        "article_title": _article_title(session),
        "article_url": session.article_url,
        "status": session.status.value,
        "study_status": session.study_status.value,
        "timestamp": _timestamp_ms(session),
        "error_message": last_error.get("reason") if failed else None,
        "error_step": last_error.get("step") if failed else None,
    }


class QueueAdmissionController:
    def __init__(self, session_factory, orchestrator: Orchestrator, runner: TaskRunner, settings: Settings):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.runner = runner
        self.settings = settings
        self.capacity = settings.queue_capacity

    def _spawn(self, session_id: int, limiter: str = "session") -> None:
        self.runner.spawn(limiter, self.process, session_id)

    def process(self, session_id: int) -> Optional[SessionStatus]:
        """Run the pipeline for one session; a final skip frees its slot."""
        status = self.orchestrator.process_session(session_id)
        if status in RELEASING_STATUSES:
            with get_session(self.session_factory) as db:
                user_id = repo.get_by_id(db, ReadingSession, session_id).user_id
            logger.info("Session %s ended as %s; refilling %s's queue", session_id, status.value, user_id)
            self.on_archive(user_id)
        return status

    def _reclaim_if_stale(self, db, session: ReadingSession) -> bool:
        # a worker that died mid-run leaves the session in processing; take it over once it goes quiet
        return repo.reclaim_stale_session(db, session.id, self.orchestrator.stale_after)

    def _load_owned(self, db, user_id: str, token: str) -> ReadingSession:
        session = repo.get_session_by_token(db, token)
        if session is None:
            raise LookupError("Session not found")
        if session.user_id != user_id:
            raise PermissionError("Session belongs to another user")
        return session

    # ------------------------------------------------------------------
    # Submission / retry
    # ------------------------------------------------------------------
    def submit(self, user_id: str, url: str) -> SubmitResult:
        """Create (or reuse) the user's session for ``url`` and admit it if a slot is free.

        Raises ValueError for a URL that cannot be normalized.
        """
        normalized = normalize_url(url)
        with get_session(self.session_factory) as db:
            session, created = repo.get_or_create_session(
                db, user_id, normalized, url.strip(), self.settings.session_token_length
            )
            invoke = False
            if session.status == SessionStatus.BOOKMARKED and session.study_status != StudyStatus.ARCHIVED:
                invoke = repo.promote_session(db, session.id, user_id, self.capacity)
                if not invoke:
                    logger.info("Queue full for %s; session %s waits", user_id, session.session_token)
            elif session.status in (SessionStatus.ERRORED, SessionStatus.PENDING):
                # already admitted: run it again without touching the waiting list
                invoke = True
            elif session.status == SessionStatus.PROCESSING:
                invoke = self._reclaim_if_stale(db, session)
            session = repo.get_by_id(db, ReadingSession, session.id)

        if invoke:
            self._spawn(session.id)
        logger.info(
            "Submit %s by %s -> %s (%s, worker=%s)",
            normalized, user_id, session.session_token, "new" if created else "existing", invoke,
        )
        return SubmitResult(session=session, worker_invoked=invoke)

    def retry(self, user_id: str, token: str) -> SubmitResult:
        with get_session(self.session_factory) as db:
            session = self._load_owned(db, user_id, token)
            invoke = False
            if session.status in (SessionStatus.ERRORED, SessionStatus.PENDING):
                invoke = True
            elif session.status == SessionStatus.PROCESSING:
                invoke = self._reclaim_if_stale(db, session)
            elif session.status == SessionStatus.BOOKMARKED:
                invoke = repo.promote_session(db, session.id, user_id, self.capacity)
            session = repo.get_by_id(db, ReadingSession, session.id)
        if invoke:
            self._spawn(session.id)
        return SubmitResult(session=session, worker_invoked=invoke)

    # ------------------------------------------------------------------
    # Slot release / refill
    # ------------------------------------------------------------------
    def _promote_next(self, db, user_id: str) -> Optional[ReadingSession]:
        while True:
            candidate = repo.oldest_waiting_session(db, user_id)
            if candidate is None:
                return None
            if repo.promote_session(db, candidate.id, user_id, self.capacity):
                logger.info("Promoted waiting session %s for %s", candidate.session_token, user_id)
                self._spawn(candidate.id, limiter="pending")
                return repo.get_by_id(db, ReadingSession, candidate.id)
            if repo.count_occupying(db, user_id) >= self.capacity:
                return None
            # candidate was taken by a concurrent promotion; look again

    def on_archive(self, user_id: str) -> Optional[ReadingSession]:
        """A slot may have opened up: promote the oldest waiting session if so."""
        with get_session(self.session_factory) as db:
            if repo.count_occupying(db, user_id) >= self.capacity:
                return None
            return self._promote_next(db, user_id)

    def auto_fill_queue(self, user_id: str) -> int:
        """Restart the user's stuck sessions, then promote until the queue is full.

        Returns how many waiting sessions were promoted.
        """
        promoted = 0
        with get_session(self.session_factory) as db:
            for session in repo.stale_processing_sessions(db, user_id, self.orchestrator.stale_after):
                if self._reclaim_if_stale(db, session):
                    self._spawn(session.id, limiter="pending")
            while repo.count_occupying(db, user_id) < self.capacity:
                if self._promote_next(db, user_id) is None:
                    break
                promoted += 1
        return promoted

    def update_study_status(self, user_id: str, token: str, study_status: StudyStatus) -> ReadingSession:
        with get_session(self.session_factory) as db:
            session = self._load_owned(db, user_id, token)
            session = repo.update_session(db, session.id, study_status=study_status)
        if study_status == StudyStatus.ARCHIVED:
            self.on_archive(user_id)
        return session

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    def bookmarks(self, user_id: str) -> dict:
        self.auto_fill_queue(user_id)
        queue: List[dict] = []
        waiting: List[dict] = []
        archived: List[dict] = []
        with get_session(self.session_factory) as db:
            sessions = sorted(repo.list_sessions_for_user(db, user_id), key=lambda s: (s.created_at, s.id))
            for session in sessions:
                entry = _bookmark(session)
                if session.study_status == StudyStatus.ARCHIVED:
                    archived.append(entry)
                elif session.status in OCCUPYING_STATUSES and session.study_status in ACTIVE_STUDY_STATUSES:
                    queue.append(entry)
                else:
                    waiting.append(entry)

        # queue and waiting list oldest first, archive newest first
        archived.reverse()
        return {"queue": queue[:self.capacity], "waiting": waiting, "archived": archived}

    def queue_count(self, user_id: str) -> Tuple[int, Optional[str]]:
        with get_session(self.session_factory) as db:
            ready = repo.ready_sessions(db, user_id)
        return len(ready), (ready[0].session_token if ready else None)

    def session_status(self, token: str) -> ReadingSession:
        with get_session(self.session_factory) as db:
            session = repo.get_session_by_token(db, token)
        if session is None:
            raise LookupError("Session not found")
        return session

    def curiosity(self, token: str) -> dict:
        """Polling view of a session's questions."""
        with get_session(self.session_factory) as db:
            session = repo.get_session_by_token(db, token)
            if session is None:
                raise LookupError("Session not found")
            cq = repo.get_curiosity_quiz_by_quiz_id(db, session.quiz_id) if session.quiz_id else None

        questions = None
        if cq is not None and cq.status == CuriosityQuizStatus.READY and session.status == SessionStatus.READY:
            questions = cq.questions or []
        error_message = failure_reason(session)
        if error_message is None and session.status in FAILED_SESSION_STATUSES and cq is not None:
            error_message = cq.error_message
        return {"status": session.status.value, "questions": questions, "error_message": error_message}
