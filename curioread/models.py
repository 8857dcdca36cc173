# models.py
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, ForeignKey, JSON, Enum, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship

from curioread.db import Base
from curioread.status import (
    ArticleStatus, QuizStatus, CuriosityQuizStatus, SessionStatus, StudyStatus, ContentMedium,
)
from curioread.utils import utcnow


def _status(enum_cls, default):
    # store the lowercase values ("pending"), not the member names
    return Column(
        Enum(enum_cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32),
        nullable=False,
        default=default,
        index=True,
    )


class Article(Base):
    __tablename__ = "articles"

    id = Column(Integer, primary_key=True, index=True)
    normalized_url = Column(String(2048), unique=True, index=True, nullable=False)
    original_url = Column(String(2048), nullable=False)
    status = _status(ArticleStatus, ArticleStatus.PENDING)
    storage_path = Column(String(1024))
    storage_metadata = Column(JSON, default=dict)   # {bucket, size_bytes, files:{html,text}}
    content_hash = Column(String(64))
    last_scraped_at = Column(DateTime)
    meta = Column("metadata", JSON, default=dict)   # title/byline/excerpt/... + analysis
    content_medium = Column(
        Enum(ContentMedium, values_callable=lambda e: [m.value for m in e], native_enum=False, length=16),
        nullable=False,
        default=ContentMedium.UNKNOWN,
    )
    error_message = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    quiz = relationship("Quiz", back_populates="article", uselist=False)


class Quiz(Base):
    __tablename__ = "quizzes"

    id = Column(Integer, primary_key=True, index=True)
    article_id = Column(Integer, ForeignKey("articles.id"), unique=True, index=True, nullable=False)
    status = _status(QuizStatus, QuizStatus.PENDING)
    model_used = Column(String(128))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    article = relationship("Article", back_populates="quiz")
    curiosity_quiz = relationship("CuriosityQuiz", back_populates="quiz", uselist=False)


class CuriosityQuiz(Base):
    __tablename__ = "curiosity_quizzes"

    id = Column(Integer, primary_key=True, index=True)
    quiz_id = Column(Integer, ForeignKey("quizzes.id", ondelete="CASCADE"), unique=True, index=True, nullable=False)
    status = _status(CuriosityQuizStatus, CuriosityQuizStatus.PENDING)
    questions = Column(JSON)            # ordered list of question cards
    pedagogy = Column(JSON)             # cached analysis output
    error_message = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    model_version = Column(String(128))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    quiz = relationship("Quiz", back_populates="curiosity_quiz")


class ReadingSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        UniqueConstraint("user_id", "normalized_url", name="uq_sessions_user_article"),
        Index("ix_sessions_user_created", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_token = Column(String(64), unique=True, index=True, nullable=False)
    user_id = Column(String(128), index=True, nullable=False)
    article_url = Column(String(2048), nullable=False)
    normalized_url = Column(String(2048), nullable=False)   # dedup key; article_url keeps what the user sent
    quiz_id = Column(Integer, ForeignKey("quizzes.id"), index=True)
    status = _status(SessionStatus, SessionStatus.BOOKMARKED)
    study_status = Column(
        Enum(StudyStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32),
        nullable=False,
        default=StudyStatus.NOT_STARTED,
        index=True,
    )
    meta = Column("metadata", JSON, default=dict)   # lastError{step, reason}, title
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    quiz = relationship("Quiz")
