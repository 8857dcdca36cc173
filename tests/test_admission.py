from datetime import timedelta

import pytest

from conftest import add_session
from curioread import repository as repo
from curioread.errors import ScrapeError
from curioread.models import Article, ReadingSession
from curioread.status import SessionStatus, StudyStatus
from curioread.utils import utcnow


def urls(n):
    return [f"https://example.com/article-{i}" for i in range(n)]


def test_third_submission_waits(controller, runner):
    results = [controller.submit("alice", url) for url in urls(3)]

    assert [r.worker_invoked for r in results] == [True, True, False]
    assert [r.session.status for r in results] == [
        SessionStatus.PENDING, SessionStatus.PENDING, SessionStatus.BOOKMARKED,
    ]
    assert [limiter for limiter, _fn, _args in runner.tasks] == ["session", "session"]


def test_resubmitting_returns_the_same_session(controller):
    first = controller.submit("alice", "https://Example.com/story/")
    again = controller.submit("alice", "https://example.com/story")
    assert again.session.session_token == first.session.session_token
    # still pending: run it again rather than making a second row
    assert again.worker_invoked


def test_invalid_url_is_rejected(controller):
    with pytest.raises(ValueError):
        controller.submit("alice", "   ")


def test_archiving_promotes_the_oldest_waiting_session(controller, runner):
    first, second, third = (controller.submit("alice", url) for url in urls(3))
    runner.run_all()
    assert controller.session_status(first.session.session_token).status == SessionStatus.READY

    controller.update_study_status("alice", first.session.session_token, StudyStatus.ARCHIVED)

    promoted = controller.session_status(third.session.session_token)
    assert promoted.status == SessionStatus.PENDING
    assert runner.tasks[-1][0] == "pending"
    runner.run_all()
    assert controller.session_status(third.session.session_token).status == SessionStatus.READY


def test_bookmarks_refill_the_queue(db, controller, runner):
    for url in urls(3):
        add_session(db, "alice", url, status=SessionStatus.BOOKMARKED)

    view = controller.bookmarks("alice")

    assert [b["status"] for b in view["queue"]] == ["pending", "pending"]
    assert [b["article_url"] for b in view["queue"]] == urls(2)
    assert [b["article_url"] for b in view["waiting"]] == urls(3)[2:]
    assert view["archived"] == []
    assert [limiter for limiter, _fn, _args in runner.tasks] == ["pending", "pending"]


def test_bookmark_entries_carry_failure_details(db, controller):
    failed = add_session(db, "alice", urls(1)[0], status=SessionStatus.ERRORED)
    repo.update_session(db, failed.id, meta={"lastError": {"step": "article", "reason": "HTTP 503"}})
    add_session(db, "alice", "https://example.com/old", status=SessionStatus.READY,
                study_status=StudyStatus.ARCHIVED)

    view = controller.bookmarks("alice")

    entry = view["queue"][0]
    assert entry["error_message"] == "HTTP 503"
    assert entry["error_step"] == "article"
    assert entry["article_title"] is None
    assert isinstance(entry["timestamp"], int)
    assert [b["article_url"] for b in view["archived"]] == ["https://example.com/old"]


def test_errored_resubmit_does_not_promote(db, controller, runner):
    errored = add_session(db, "alice", "https://example.com/a", status=SessionStatus.ERRORED)
    add_session(db, "alice", "https://example.com/b", status=SessionStatus.PENDING)
    waiting = add_session(db, "alice", "https://example.com/c", status=SessionStatus.BOOKMARKED)

    result = controller.submit("alice", "https://example.com/a")

    assert result.worker_invoked
    assert result.session.id == errored.id
    assert repo.get_by_id(db, ReadingSession, waiting.id).status == SessionStatus.BOOKMARKED
    assert len(runner.tasks) == 1


def test_retry_and_study_status_check_ownership(controller):
    token = controller.submit("alice", urls(1)[0]).session.session_token

    with pytest.raises(PermissionError):
        controller.retry("mallory", token)
    with pytest.raises(LookupError):
        controller.retry("alice", "missing-token")
    with pytest.raises(PermissionError):
        controller.update_study_status("mallory", token, StudyStatus.ARCHIVED)


def test_retry_reruns_an_errored_session(db, controller, runner):
    session = add_session(db, "alice", urls(1)[0], status=SessionStatus.ERRORED)
    result = controller.retry("alice", session.session_token)
    assert result.worker_invoked
    runner.run_all()
    assert controller.session_status(session.session_token).status == SessionStatus.READY


def test_queue_count_and_curiosity_view(controller, runner):
    tokens = [controller.submit("alice", url).session.session_token for url in urls(2)]
    assert controller.queue_count("alice") == (0, None)
    assert controller.curiosity(tokens[0])["questions"] is None

    runner.run_all()

    assert controller.queue_count("alice") == (2, tokens[0])
    view = controller.curiosity(tokens[0])
    assert view["status"] == "ready"
    assert view["questions"][0]["answer_index"] == 1
    assert view["error_message"] is None
    with pytest.raises(LookupError):
        controller.curiosity("missing-token")


def test_final_skip_frees_the_slot(controller, runner, scraper):
    scraper.errors = [ScrapeError("Article text too short", code="CONTENT_TOO_SHORT", url=urls(1)[0])]
    first, second, third = (controller.submit("alice", url) for url in urls(3))

    runner.run_all()

    status = controller.session_status
    assert status(first.session.session_token).status == SessionStatus.SKIP_BY_FAILURE
    assert status(second.session.session_token).status == SessionStatus.READY
    assert status(third.session.session_token).status == SessionStatus.READY
    assert len(scraper.calls) == 3


def make_stale(db, session):
    repo.update_fields(db, ReadingSession, session.id, updated_at=utcnow() - timedelta(minutes=30))


def test_stuck_processing_session_is_taken_over(db, controller, runner):
    stuck = add_session(db, "alice", "https://example.com/a", status=SessionStatus.PROCESSING)
    add_session(db, "alice", "https://example.com/b", status=SessionStatus.READY)
    add_session(db, "alice", "https://example.com/c", status=SessionStatus.BOOKMARKED)

    # recently touched: another worker may still be running it
    assert not controller.submit("alice", "https://example.com/a").worker_invoked
    assert not controller.retry("alice", stuck.session_token).worker_invoked

    make_stale(db, stuck)
    assert controller.retry("alice", stuck.session_token).worker_invoked
    # the takeover refreshed the row, so a second caller does not start another run
    assert not controller.submit("alice", "https://example.com/a").worker_invoked
    assert len(runner.tasks) == 1

    runner.run_all()
    assert controller.session_status(stuck.session_token).status == SessionStatus.READY


def test_bookmarks_restart_stuck_sessions(db, controller, runner):
    stuck = add_session(db, "alice", "https://example.com/a", status=SessionStatus.PROCESSING)
    busy = add_session(db, "alice", "https://example.com/b", status=SessionStatus.PROCESSING)
    make_stale(db, stuck)

    controller.bookmarks("alice")

    assert [(limiter, args) for limiter, _fn, args in runner.tasks] == [("pending", (stuck.id,))]
    runner.run_all()
    assert controller.session_status(stuck.session_token).status == SessionStatus.READY
    assert controller.session_status(busy.session_token).status == SessionStatus.PROCESSING


def test_submitted_url_is_kept_for_fetching(db, controller, runner, scraper):
    raw = "https://Example.com/story/?b=2&a=1#comments"
    canonical = "https://example.com/story?a=1&b=2"

    result = controller.submit("alice", raw)
    assert result.session.article_url == raw
    assert result.session.normalized_url == canonical
    assert controller.submit("alice", canonical).session.session_token == result.session.session_token

    runner.run_all()

    assert scraper.calls[0] == raw
    article = db.query(Article).one()
    assert article.original_url == raw
    assert article.normalized_url == canonical
