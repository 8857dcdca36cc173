# main.py
from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from curioread import schemas
from curioread.admission import QueueAdmissionController, failure_reason
from curioread.config import Settings, get_settings
from curioread.db import SessionLocal, engine, init_db
from curioread.errors import truncate
from curioread.generators import build_adapters
from curioread.logs import setup_logging
from curioread.pipeline import Orchestrator
from curioread.scraper import Scraper
from curioread.storage import ContentStore
from curioread.worker import TaskRunner

logger = logging.getLogger(__name__)


def build_controller(settings: Optional[Settings] = None, session_factory=None,
                     db_engine=None) -> QueueAdmissionController:
    """Wire the real adapters together (database, store, scraper, Gemini, worker pool)."""
    settings = settings or get_settings()
    init_db(db_engine or engine)
    session_factory = session_factory or SessionLocal
    analyzer, generator = build_adapters(settings)
    orchestrator = Orchestrator(
        session_factory=session_factory,
        store=ContentStore(settings.content_store_dir, settings.max_pdf_size_bytes),
        scraper=Scraper(min_text_chars=settings.min_article_chars),
        analyzer=analyzer,
        generator=generator,
        settings=settings,
    )
    return QueueAdmissionController(session_factory, orchestrator, TaskRunner.from_settings(settings), settings)


def _error(status_code: int, message) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": truncate(str(message))})


def create_app(controller: Optional[QueueAdmissionController] = None) -> FastAPI:
    if controller is None:
        settings = get_settings()
        setup_logging(settings.log_level)
        controller = build_controller(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        controller.runner.shutdown(wait_for_tasks=False)

    # -------------------------------------------------------------------------
    # App & CORS
    # -------------------------------------------------------------------------
    app = FastAPI(title="curioread - quiz-guided reading", lifespan=lifespan)
    app.state.controller = controller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten in prod
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------------------------------------------------------------
    # Error envelope: {"error": "..."}, never a stack trace
    # -------------------------------------------------------------------------
    @app.exception_handler(StarletteHTTPException)
    async def http_error(_request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_error(_request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ())[1:])
        return _error(400, f"Invalid request: {field} {first.get('msg', '')}".strip())

    @app.exception_handler(Exception)
    async def unhandled_error(_request: Request, exc: Exception):
        logger.exception("Unhandled error")
        return _error(500, "Internal server error")

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------
    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------
    @app.post("/api/sessions", response_model=schemas.SubmitOut)
    def submit_session(payload: schemas.SubmitIn):
        try:
            result = controller.submit(payload.user_id, payload.url)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid URL: {e}")
        return schemas.SubmitOut(
            session_token=result.session.session_token,
            status=result.session.status.value,
            worker_invoked=result.worker_invoked,
        )

    @app.get("/api/sessions", response_model=schemas.SessionStatusOut)
    def get_session_status(token: str = Query(..., min_length=1)):
        try:
            session = controller.session_status(token)
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return schemas.SessionStatusOut(
            status=session.status.value,
            quiz_id=session.quiz_id,
            failure_reason=failure_reason(session),
        )

    @app.post("/api/sessions/retry", response_model=schemas.SubmitOut)
    def retry_session(payload: schemas.RetryIn):
        try:
            result = controller.retry(payload.user_id, payload.session_token)
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except PermissionError as e:
            raise HTTPException(status_code=403, detail=str(e))
        return schemas.SubmitOut(
            session_token=result.session.session_token,
            status=result.session.status.value,
            worker_invoked=result.worker_invoked,
        )

    # -------------------------------------------------------------------------
    # Questions (polled by the client until status is final)
    # -------------------------------------------------------------------------
    def _curiosity(q: str) -> schemas.CuriosityOut:
        try:
            view = controller.curiosity(q)
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return schemas.CuriosityOut(**view)

    @app.get("/api/curiosity", response_model=schemas.CuriosityOut)
    def get_curiosity(q: str = Query(..., min_length=1)):
        return _curiosity(q)

    @app.get("/api/instructions", response_model=schemas.CuriosityOut)
    def get_instructions(q: str = Query(..., min_length=1)):
        return _curiosity(q)

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------
    @app.post("/api/study-status", response_model=schemas.StudyStatusOut)
    def update_study_status(payload: schemas.StudyStatusIn):
        try:
            session = controller.update_study_status(payload.user_id, payload.session_token, payload.study_status)
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except PermissionError as e:
            raise HTTPException(status_code=403, detail=str(e))
        return schemas.StudyStatusOut(
            success=True,
            session=schemas.StudyStatusSession(
                session_token=session.session_token,
                study_status=session.study_status.value,
            ),
        )

    @app.get("/api/bookmarks", response_model=schemas.BookmarksOut)
    def get_bookmarks(user_id: str = Query(..., alias="userId", min_length=1)):
        return schemas.BookmarksOut(**controller.bookmarks(user_id))

    @app.get("/api/queue-count", response_model=schemas.QueueCountOut)
    def get_queue_count(user_id: Optional[str] = Query(None, alias="userId")):
        if not user_id:
            return schemas.QueueCountOut(count=0, first_session_token=None)
        count, first = controller.queue_count(user_id)
        return schemas.QueueCountOut(count=count, first_session_token=first)

    return app
