# pipeline.py
"""Session processing: article -> quiz -> question-set claim -> analysis -> questions.

Every step is safe to re-enter. A session that failed halfway is simply run
again from the top: a fresh article short-circuits the scrape, an existing
quiz row is reused, and a cached analysis skips the analyzer, so only the
failed step actually repeats.

Work shared between sessions (one article, one quiz, one question set per
URL) is coordinated through claims in ``repository``. A session that finds
the question set already claimed by another worker leaves itself in
``processing``; the claimant fans its outcome out to every linked session.
"""
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from curioread import repository as repo
from curioread.config import Settings
from curioread.db import get_session
from curioread.errors import (
    ArticleRetryableError, ArticleTerminalError, ContentRejectedError, ErrorKind,
    QuizRetryableError, QuizTerminalError, ScrapeError, classify, truncate,
)
from curioread.generators import Analyzer, QuestionGenerator
from curioread.models import Article, Quiz, CuriosityQuiz, ReadingSession
from curioread.scraper import Scraper, ScrapedPdf
from curioread.status import (
    ArticleStatus, QuizStatus, CuriosityQuizStatus, SessionStatus, ContentMedium,
    RUNNABLE_SESSION_STATUSES, session_status_for,
)
from curioread.storage import ContentStore
from curioread.utils import extract_analysis, is_fresh, merge_metadata, normalize_url, utcnow

logger = logging.getLogger(__name__)

SUCCESS = "success"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class ProcessResult:
    resource_type: str          # article | quiz | curiosityQuiz | analysis | generation
    resource_id: Optional[int]
    status: str                 # success | skipped | failed
    error: Optional[str] = None
    data: Any = None
    terminal: bool = False
    # for skipped results: what the session should become (None = leave as is)
    session_status: Optional[SessionStatus] = None

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS


def success(resource_type: str, resource_id: Optional[int], data=None) -> ProcessResult:
    return ProcessResult(resource_type, resource_id, SUCCESS, data=data)


def skipped(resource_type: str, resource_id: Optional[int], session_status: Optional[SessionStatus] = None,
            error: Optional[str] = None) -> ProcessResult:
    return ProcessResult(resource_type, resource_id, SKIPPED, error=error, session_status=session_status)


def handle_process_error(error: BaseException, resource_type: str, resource_id: Optional[int],
                         terminal: Optional[bool] = None, limit: int = 500) -> ProcessResult:
    """Log ``error`` at the level its class deserves and wrap it as a failed result."""
    kind = classify(error)
    if terminal is None:
        terminal = kind is not ErrorKind.RETRYABLE
    message = truncate(f"{resource_type} error: {error}", limit)
    if kind is ErrorKind.RETRYABLE and not terminal:
        logger.warning("[%s %s] retryable %s: %s", resource_type, resource_id, type(error).__name__, error)
    else:
        logger.error("[%s %s] %s %s: %s", resource_type, resource_id, kind.value, type(error).__name__, error)
    return ProcessResult(resource_type, resource_id, FAILED, error=message, terminal=terminal)


class Orchestrator:
    def __init__(self, session_factory, store: ContentStore, scraper: Scraper, analyzer: Analyzer,
                 generator: QuestionGenerator, settings: Settings):
        self.session_factory = session_factory
        self.store = store
        self.scraper = scraper
        self.analyzer = analyzer
        self.generator = generator
        self.settings = settings
        self.stale_after = timedelta(minutes=settings.stale_claim_minutes)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def process_session(self, session_id: int) -> Optional[SessionStatus]:
        """Advance one session as far as it can go; returns its final status."""
        with get_session(self.session_factory) as db:
            session = repo.get_by_id(db, ReadingSession, session_id)
            if session is None:
                logger.warning("Session %s not found", session_id)
                return None
            if session.status not in RUNNABLE_SESSION_STATUSES:
                logger.info("Session %s is %s, nothing to do", session.id, session.status.value)
                return session.status
            if not repo.set_session_status(db, session.id, SessionStatus.PROCESSING):
                session = repo.get_by_id(db, ReadingSession, session.id)
                logger.info("Session %s moved to %s underneath us", session.id, session.status.value)
                return session.status

            logger.info("Processing session %s (%s)", session.session_token, session.article_url)
            try:
                self._run_steps(db, session)
            except Exception as e:
                db.rollback()
                logger.exception("Unexpected error while processing session %s", session.id)
                self._record_failure(db, session.id, "unknown", str(e), SessionStatus.ERRORED)
            return repo.get_by_id(db, ReadingSession, session.id).status

    def retry_session(self, token: str) -> Optional[SessionStatus]:
        with get_session(self.session_factory) as db:
            session = repo.get_session_by_token(db, token)
            if session is None:
                return None
            session_id = session.id
        return self.process_session(session_id)

    def drain_pending(self, limit: Optional[int] = None) -> int:
        """Claim and process pending sessions until none are left (or ``limit``).

        Sessions stuck in ``processing`` past the stale-claim timeout are
        taken over too, once the pending ones are done.
        """
        processed = 0
        while limit is None or processed < limit:
            with get_session(self.session_factory) as db:
                claimed = repo.claim_next_pending(db, "session") or repo.claim_stale_session(db, self.stale_after)
                if claimed is None:
                    break
                session_id = claimed.id
            self.process_session(session_id)
            processed += 1
        if processed:
            logger.info("Drained %d pending session(s)", processed)
        return processed

    # ------------------------------------------------------------------
    # Step plumbing
    # ------------------------------------------------------------------
    def _run_steps(self, db, session: ReadingSession) -> None:
        result = self.execute_step(db, session, "article", self.process_article, session)
        if not result.ok:
            return
        article = result.data

        result = self.execute_step(db, session, "quiz", self.process_quiz, session, article)
        if not result.ok:
            return
        quiz, cq = result.data

        result = self.execute_step(db, session, "curiosityQuiz", self.process_curiosity_quiz, quiz, cq)
        if not result.ok:
            return
        cq = result.data

        result = self.execute_step(db, session, "analysis", self.process_analysis, article, quiz, cq)
        if not result.ok:
            return
        metadata = result.data

        result = self.execute_step(
            db, session, "generation", self.process_question_generation, article, quiz, cq, metadata
        )
        if not result.ok:
            return

        current = repo.get_by_id(db, ReadingSession, session.id)
        meta = dict(current.meta or {})
        meta.pop("lastError", None)
        repo.set_session_status(db, session.id, SessionStatus.READY, meta=meta)
        logger.info("Session %s ready", session.session_token)

    def execute_step(self, db, session: ReadingSession, name: str, fn, *args) -> ProcessResult:
        logger.info("Session %s: starting %s", session.id, name)
        result = fn(db, *args)

        if result.status == FAILED:
            new_status = SessionStatus.SKIP_BY_FAILURE if result.terminal else SessionStatus.ERRORED
            self._record_failure(db, session.id, name, result.error, new_status)
        elif result.status == SKIPPED:
            logger.info("Session %s: %s skipped (%s)", session.id, name, result.error or "no further work")
            if result.session_status is not None:
                if result.error:
                    self._record_failure(db, session.id, name, result.error, result.session_status)
                else:
                    repo.set_session_status(db, session.id, result.session_status)
        else:
            logger.info("Session %s: %s done", session.id, name)
        return result

    def _record_failure(self, db, session_id: int, step: str, reason: str, new_status: SessionStatus) -> None:
        current = repo.get_by_id(db, ReadingSession, session_id)
        meta = dict(current.meta or {})
        meta["lastError"] = {"step": step, "reason": truncate(reason, self.settings.max_error_length)}
        if not repo.set_session_status(db, session_id, new_status, meta=meta):
            logger.info(
                "Session %s is %s; not overwriting with %s",
                session_id, current.status.value, new_status.value,
            )

    # ------------------------------------------------------------------
    # Step 1: article
    # ------------------------------------------------------------------
    def process_article(self, db, session: ReadingSession) -> ProcessResult:
        article_id = None
        try:
            try:
                normalized = normalize_url(session.article_url)
            except ValueError as e:
                raise ScrapeError(str(e), code="INVALID_URL", url=session.article_url) from e
            article = repo.ensure_article(db, normalized, session.article_url)
            article_id = article.id
            return success("article", article.id, self._ensure_article_content(db, article))
        except Exception as e:
            return handle_process_error(e, "article", article_id, limit=self.settings.max_error_length)

    def _is_usable(self, article: Article) -> bool:
        return (
            article.status == ArticleStatus.READY
            and is_fresh(article.last_scraped_at, article.storage_path, self.settings.freshness_days)
            and self.store.has_content(article.storage_path, article.storage_metadata)
        )

    def _ensure_article_content(self, db, article: Article) -> Article:
        if self._is_usable(article):
            logger.info("Article %s is fresh, skipping scrape", article.id)
            return article
        if article.status == ArticleStatus.SKIP_BY_FAILURE:
            raise ArticleTerminalError(
                article.error_message or "Article was skipped after a terminal failure",
                article.id, article.status.value,
            )

        attempts = 0
        while not repo.claim_article_for_scraping(db, article.id, self.stale_after):
            article = repo.get_by_id(db, Article, article.id)
            if self._is_usable(article):
                return article
            if article.status == ArticleStatus.SKIP_BY_FAILURE:
                raise ArticleTerminalError(
                    article.error_message or "Article was skipped after a terminal failure",
                    article.id, article.status.value,
                )
            if attempts >= self.settings.article_wait_attempts:
                raise ArticleRetryableError(
                    f"Article {article.id} is still being scraped by another worker", article.id
                )
            attempts += 1
            logger.info("Article %s is %s elsewhere; waiting (%d)", article.id, article.status.value, attempts)
            time.sleep(self.settings.article_wait_seconds)

        return self._scrape_and_store(db, repo.get_by_id(db, Article, article.id))

    def _scrape_and_store(self, db, article: Article) -> Article:
        try:
            scraped = self.scraper.scrape(article.original_url)
            if isinstance(scraped, ScrapedPdf):
                stored = self.store.store_pdf(scraped.buffer, article.normalized_url)
                medium = ContentMedium.PDF
            else:
                stored = self.store.store_article_bundle(article.id, article.normalized_url, scraped.html, scraped.text)
                medium = ContentMedium.HTML
        except (ScrapeError, ContentRejectedError) as e:
            terminal = classify(e) is ErrorKind.TERMINAL
            self._mark_article(db, article.id, terminal, str(e))
            if terminal:
                raise ArticleTerminalError(str(e), article.id, ArticleStatus.SKIP_BY_FAILURE.value) from e
            raise ArticleRetryableError(str(e), article.id, cause=e) from e
        except Exception as e:
            self._mark_article(db, article.id, False, str(e))
            raise ArticleRetryableError(str(e), article.id, cause=e) from e

        updated = repo.update_status(
            db, Article, article.id, ArticleStatus.READY,
            storage_path=stored.path,
            storage_metadata=stored.metadata,
            content_hash=stored.content_hash,
            content_medium=medium,
            meta=merge_metadata(article.meta, scraped.metadata),
            last_scraped_at=utcnow(),
            error_message=None,
        )
        if not updated:
            logger.warning("Article %s changed status while scraping; keeping the other result", article.id)
        article = repo.get_by_id(db, Article, article.id)
        logger.info("Article %s stored at %s (%s)", article.id, article.storage_path, medium.value)
        return article

    def _mark_article(self, db, article_id: int, terminal: bool, reason: str) -> None:
        new = ArticleStatus.SKIP_BY_FAILURE if terminal else ArticleStatus.FAILED
        repo.update_status(
            db, Article, article_id, new, error_message=truncate(reason, self.settings.max_error_length)
        )

    # ------------------------------------------------------------------
    # Step 2: quiz
    # ------------------------------------------------------------------
    def process_quiz(self, db, session: ReadingSession, article: Article) -> ProcessResult:
        try:
            quiz = repo.ensure_quiz(db, article.id)
            if session.quiz_id != quiz.id:
                repo.update_session(db, session.id, quiz_id=quiz.id)
            if quiz.status == QuizStatus.SKIP_BY_ADMIN:
                return skipped("quiz", quiz.id, SessionStatus.SKIP_BY_ADMIN, "Quiz was skipped by an admin")
            cq = repo.ensure_curiosity_quiz(db, quiz.id)
            return success("quiz", quiz.id, (quiz, cq))
        except Exception as e:
            return handle_process_error(e, "quiz", article.id, limit=self.settings.max_error_length)

    # ------------------------------------------------------------------
    # Step 3: question-set claim
    # ------------------------------------------------------------------
    def process_curiosity_quiz(self, db, quiz: Quiz, cq: CuriosityQuiz) -> ProcessResult:
        try:
            cq = repo.get_by_id(db, CuriosityQuiz, cq.id)
            settled = self._settled(cq)
            if settled is not None:
                return settled

            if repo.claim_curiosity_quiz(db, cq.id, self.settings.max_quiz_retries, self.stale_after):
                repo.update_status(db, Quiz, quiz.id, QuizStatus.PROCESSING)
                logger.info("Claimed curiosity quiz %s for quiz %s", cq.id, quiz.id)
                return success("curiosityQuiz", cq.id, repo.get_by_id(db, CuriosityQuiz, cq.id))

            cq = repo.get_by_id(db, CuriosityQuiz, cq.id)
            settled = self._settled(cq)
            if settled is not None:
                return settled
            if cq.status == CuriosityQuizStatus.FAILED:
                # retry budget already spent; escalate instead of leaving it failed forever
                error = QuizTerminalError(
                    f"Retry budget exhausted ({cq.retry_count} attempts): {cq.error_message or ''}".strip(),
                    cq.id,
                )
                self._finish_failure(db, quiz.id, cq.id, cq.retry_count, True, str(error))
                return handle_process_error(error, "curiosityQuiz", cq.id, limit=self.settings.max_error_length)
            logger.info("Curiosity quiz %s is being generated elsewhere", cq.id)
            return skipped("curiosityQuiz", cq.id)
        except Exception as e:
            return handle_process_error(e, "curiosityQuiz", cq.id, limit=self.settings.max_error_length)

    def _settled(self, cq: CuriosityQuiz) -> Optional[ProcessResult]:
        if cq.status == CuriosityQuizStatus.READY:
            return skipped("curiosityQuiz", cq.id, SessionStatus.READY)
        if cq.status == CuriosityQuizStatus.SKIP_BY_FAILURE:
            return skipped(
                "curiosityQuiz", cq.id, SessionStatus.SKIP_BY_FAILURE,
                cq.error_message or "Question generation failed permanently",
            )
        return None

    # ------------------------------------------------------------------
    # Step 4: analysis
    # ------------------------------------------------------------------
    def process_analysis(self, db, article: Article, quiz: Quiz, cq: CuriosityQuiz) -> ProcessResult:
        try:
            cached = extract_analysis(article.meta)
            if cached is not None:
                logger.info("Reusing cached analysis for article %s", article.id)
                return success("analysis", cq.id, cached)
            if cq.pedagogy and cq.pedagogy.get("hooks"):
                logger.info("Reusing cached pedagogy on curiosity quiz %s", cq.id)
                return success("analysis", cq.id, {
                    "pedagogy": {"hooks": cq.pedagogy["hooks"]},
                    "language": cq.pedagogy.get("language") or "en",
                })

            text = self._article_text(db, article, cq)
            analysis = self.analyzer.analyze(text)

            current = repo.get_by_id(db, Article, article.id)
            meta = dict(current.meta or {})
            meta["analysis"] = analysis
            repo.update_fields(db, Article, article.id, meta=meta)
            repo.update_fields(
                db, CuriosityQuiz, cq.id,
                pedagogy={"hooks": analysis["pedagogy"]["hooks"], "language": analysis.get("language") or "en"},
                model_version=self.analyzer.model_name or self.settings.gemini_model or None,
            )
            return success("analysis", cq.id, analysis)
        except Exception as e:
            terminal = self.handle_generation_failure(db, quiz.id, cq.id, e)
            return handle_process_error(e, "analysis", cq.id, terminal=terminal, limit=self.settings.max_error_length)

    def _article_text(self, db, article: Article, cq: CuriosityQuiz) -> str:
        if article.content_medium == ContentMedium.PDF:
            raise QuizTerminalError("PDF articles are not supported for question generation.", cq.id)
        text = self.store.load_text(article.storage_path, article.storage_metadata)
        if not text:
            # force a re-scrape on the next run
            repo.compare_and_set_status(db, Article, article.id, ArticleStatus.READY, ArticleStatus.STALE)
            raise QuizRetryableError(f"Stored text for article {article.id} is missing", cq.id)
        return text

    # ------------------------------------------------------------------
    # Step 5: question generation
    # ------------------------------------------------------------------
    def process_question_generation(self, db, article: Article, quiz: Quiz, cq: CuriosityQuiz,
                                    metadata: dict) -> ProcessResult:
        try:
            text = self._article_text(db, article, cq) if self.generator.needs_text else None
            questions = self.generator.generate(metadata, text)
            model = self.generator.model_name or self.settings.gemini_model or "unknown-model"

            repo.update_status(
                db, CuriosityQuiz, cq.id, CuriosityQuizStatus.READY,
                questions=questions, model_version=model, error_message=None,
            )
            repo.update_status(db, Quiz, quiz.id, QuizStatus.READY, model_used=model)
            count = repo.update_sessions_by_quiz_id(db, quiz.id, SessionStatus.READY)
            logger.info("Quiz %s ready with %d question(s); %d session(s) updated", quiz.id, len(questions), count)
            return success("generation", cq.id, questions)
        except Exception as e:
            terminal = self.handle_generation_failure(db, quiz.id, cq.id, e)
            return handle_process_error(e, "generation", cq.id, terminal=terminal, limit=self.settings.max_error_length)

    def handle_generation_failure(self, db, quiz_id: int, cq_id: int, error: BaseException) -> bool:
        """Count a failed analysis/generation attempt; returns True once it is final.

        Retryable errors leave the question set ``failed`` until the retry
        budget is spent; after that, or on any terminal error, the quiz and
        every session reading it move to ``skip_by_failure``.
        """
        db.rollback()
        cq = repo.get_by_id(db, CuriosityQuiz, cq_id)
        retry_count = (cq.retry_count or 0) + 1
        terminal = classify(error) is not ErrorKind.RETRYABLE or retry_count >= self.settings.max_quiz_retries
        self._finish_failure(db, quiz_id, cq_id, retry_count, terminal, str(error))
        return terminal

    def _finish_failure(self, db, quiz_id: int, cq_id: int, retry_count: int, terminal: bool, reason: str) -> None:
        reason = truncate(reason, self.settings.max_error_length)
        if terminal:
            cq_status, quiz_status = CuriosityQuizStatus.SKIP_BY_FAILURE, QuizStatus.SKIP_BY_FAILURE
        else:
            cq_status, quiz_status = CuriosityQuizStatus.FAILED, QuizStatus.FAILED
        session_status = session_status_for(cq_status)
        repo.update_status(db, CuriosityQuiz, cq_id, cq_status, retry_count=retry_count, error_message=reason)
        repo.update_status(db, Quiz, quiz_id, quiz_status)
        count = repo.update_sessions_by_quiz_id(db, quiz_id, session_status)
        log = logger.error if terminal else logger.warning
        log(
            "Quiz %s generation failed (attempt %d, %s); %d session(s) -> %s: %s",
            quiz_id, retry_count, "final" if terminal else "will retry", count, session_status.value, reason,
        )
