import threading
from datetime import timedelta

import pytest

from conftest import add_session
from curioread import repository as repo
from curioread.db import get_session
from curioread.errors import StatusTransitionError
from curioread.models import Article, Quiz, ReadingSession
from curioread.status import ArticleStatus, QuizStatus, SessionStatus, StudyStatus
from curioread.utils import utcnow

URL = "https://example.com/story"


def _run_threads(count, target):
    barrier = threading.Barrier(count)
    results = [None] * count
    errors = []

    def worker(i):
        try:
            barrier.wait()
            results[i] = target()
        except Exception as e:  # surfaced through the assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert not errors, errors
    return results


def test_ensure_article_is_idempotent(db):
    first = repo.ensure_article(db, URL, URL)
    second = repo.ensure_article(db, URL, "https://example.com/story/")
    assert first.id == second.id
    assert first.status == ArticleStatus.PENDING


def test_concurrent_ensure_article_converges_to_one_row(session_factory):
    def create():
        with get_session(session_factory) as db:
            return repo.ensure_article(db, URL, URL).id

    ids = _run_threads(6, create)
    assert len(set(ids)) == 1
    with get_session(session_factory) as db:
        assert db.query(Article).count() == 1


def test_claim_next_pending_takes_oldest(db):
    a = repo.ensure_article(db, "https://example.com/1", "https://example.com/1")
    repo.ensure_article(db, "https://example.com/2", "https://example.com/2")

    claimed = repo.claim_next_pending(db, "article")
    assert claimed.id == a.id
    assert claimed.status == ArticleStatus.SCRAPING

    repo.claim_next_pending(db, "article")
    assert repo.claim_next_pending(db, "article") is None


def test_claim_next_pending_has_one_winner(session_factory):
    with get_session(session_factory) as db:
        repo.ensure_article(db, URL, URL)

    def claim():
        with get_session(session_factory) as db:
            row = repo.claim_next_pending(db, "article")
            return row.id if row is not None else None

    results = _run_threads(8, claim)
    assert len([r for r in results if r is not None]) == 1


def test_compare_and_set_status(db):
    article = repo.ensure_article(db, URL, URL)
    quiz = repo.ensure_quiz(db, article.id)

    assert repo.compare_and_set_status(db, Quiz, quiz.id, QuizStatus.PENDING, QuizStatus.PROCESSING)
    # no longer pending: nothing happens
    assert not repo.compare_and_set_status(db, Quiz, quiz.id, QuizStatus.PENDING, QuizStatus.PROCESSING)
    assert repo.get_by_id(db, Quiz, quiz.id).status == QuizStatus.PROCESSING


def test_illegal_transition_raises(db):
    article = repo.ensure_article(db, URL, URL)
    quiz = repo.ensure_quiz(db, article.id)
    with pytest.raises(StatusTransitionError):
        repo.compare_and_set_status(db, Quiz, quiz.id, QuizStatus.READY, QuizStatus.PENDING)


def test_update_status_only_from_legal_sources(db):
    article = repo.ensure_article(db, URL, URL)
    # pending -> ready skips the scrape and is not allowed
    assert not repo.update_status(db, Article, article.id, ArticleStatus.READY)
    assert repo.update_status(db, Article, article.id, ArticleStatus.SCRAPING)
    assert repo.update_status(db, Article, article.id, ArticleStatus.READY)


def test_update_fields_rejects_status(db):
    article = repo.ensure_article(db, URL, URL)
    with pytest.raises(ValueError):
        repo.update_fields(db, Article, article.id, status=ArticleStatus.READY)


def test_abandoned_scrape_lease_is_reclaimed(db):
    article = repo.ensure_article(db, URL, URL)
    stale_after = timedelta(minutes=3)
    assert repo.claim_article_for_scraping(db, article.id, stale_after)
    # someone else holds a fresh lease
    assert not repo.claim_article_for_scraping(db, article.id, stale_after)

    repo.update_fields(db, Article, article.id, updated_at=utcnow() - timedelta(minutes=10))
    assert repo.claim_article_for_scraping(db, article.id, stale_after)
    reclaimed = repo.get_by_id(db, Article, article.id)
    assert reclaimed.status == ArticleStatus.SCRAPING
    assert reclaimed.retry_count == 1


def test_get_or_create_session(db):
    row, created = repo.get_or_create_session(db, "u1", URL)
    again, created_again = repo.get_or_create_session(db, "u1", URL)
    other, _ = repo.get_or_create_session(db, "u2", URL)
    assert created and not created_again
    assert row.id == again.id
    assert other.id != row.id
    assert row.status == SessionStatus.BOOKMARKED
    assert len(row.session_token) == 16


def test_session_keeps_submitted_url(db):
    row, _ = repo.get_or_create_session(db, "u1", URL, URL + "/?utm_source=x")
    again, created = repo.get_or_create_session(db, "u1", URL, URL)
    assert not created
    assert again.id == row.id
    assert again.article_url == URL + "/?utm_source=x"
    assert again.normalized_url == URL


def test_stale_session_is_reclaimed_once(db):
    session = add_session(db, "u1", URL, status=SessionStatus.PROCESSING)
    stale_after = timedelta(minutes=3)
    assert not repo.reclaim_stale_session(db, session.id, stale_after)

    repo.update_fields(db, ReadingSession, session.id, updated_at=utcnow() - timedelta(minutes=10))
    assert [s.id for s in repo.stale_processing_sessions(db, "u1", stale_after)] == [session.id]
    assert repo.reclaim_stale_session(db, session.id, stale_after)
    assert not repo.reclaim_stale_session(db, session.id, stale_after)
    assert repo.claim_stale_session(db, stale_after) is None


def test_promote_respects_capacity(db):
    first = add_session(db, "u1", "https://example.com/1", SessionStatus.READY)
    add_session(db, "u1", "https://example.com/2", SessionStatus.PROCESSING)
    waiting = add_session(db, "u1", "https://example.com/3", SessionStatus.BOOKMARKED)
    # another user's sessions do not count
    add_session(db, "u2", "https://example.com/4", SessionStatus.PENDING)

    assert repo.count_occupying(db, "u1") == 2
    assert not repo.promote_session(db, waiting.id, "u1", capacity=2)

    repo.update_session(db, first.id, study_status=StudyStatus.ARCHIVED)
    assert repo.count_occupying(db, "u1") == 1
    assert repo.promote_session(db, waiting.id, "u1", capacity=2)
    assert repo.get_by_id(db, ReadingSession, waiting.id).status == SessionStatus.PENDING


def test_concurrent_promotions_never_overfill(session_factory):
    with get_session(session_factory) as db:
        ids = [
            add_session(db, "u1", f"https://example.com/{i}", SessionStatus.BOOKMARKED).id
            for i in range(5)
        ]

    def promote(session_id):
        with get_session(session_factory) as db:
            return repo.promote_session(db, session_id, "u1", capacity=2)

    barrier = threading.Barrier(len(ids))
    results = []
    lock = threading.Lock()

    def worker(session_id):
        barrier.wait()
        ok = promote(session_id)
        with lock:
            results.append(ok)

    threads = [threading.Thread(target=worker, args=(i,)) for i in ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 2
    with get_session(session_factory) as db:
        assert repo.count_occupying(db, "u1") == 2


def test_oldest_waiting_session_skips_archived(db):
    add_session(db, "u1", "https://example.com/1", SessionStatus.BOOKMARKED, StudyStatus.ARCHIVED)
    second = add_session(db, "u1", "https://example.com/2", SessionStatus.BOOKMARKED)
    add_session(db, "u1", "https://example.com/3", SessionStatus.BOOKMARKED)
    assert repo.oldest_waiting_session(db, "u1").id == second.id


def test_fan_out_leaves_finished_sessions_alone(db):
    article = repo.ensure_article(db, URL, URL)
    quiz = repo.ensure_quiz(db, article.id)
    processing = add_session(db, "u1", URL, SessionStatus.PROCESSING, quiz_id=quiz.id)
    ready = add_session(db, "u2", URL, SessionStatus.READY, quiz_id=quiz.id)
    waiting = add_session(db, "u3", URL, SessionStatus.BOOKMARKED, quiz_id=quiz.id)

    assert repo.update_sessions_by_quiz_id(db, quiz.id, SessionStatus.ERRORED) == 1
    assert repo.get_by_id(db, ReadingSession, processing.id).status == SessionStatus.ERRORED
    assert repo.get_by_id(db, ReadingSession, ready.id).status == SessionStatus.READY
    assert repo.get_by_id(db, ReadingSession, waiting.id).status == SessionStatus.BOOKMARKED
