"""SQLModel data models.

Each table holds one document: embedded collections (questions, graded
answers, allow-lists and back-reference id sets) are stored as JSON columns
and always replaced wholesale, never mutated in place. Ids are stored in those
lists, so every table uses SQLite `AUTOINCREMENT` and an id is never reused.
"""

from typing import List, Optional
from datetime import datetime, timezone

from sqlalchemy import Column, Index, JSON, text
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return `value` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `username`: unique login name
    - `email`: unique contact address
    - `password_hash`: hashed password string (never store plaintext)
    - `quizzes` / `results`: ids of the quizzes authored and results submitted
    """
    __table_args__ = {"sqlite_autoincrement": True}

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    quizzes: List[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    results: List[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)


class Quiz(SQLModel, table=True):
    """An owner-authored quiz.

    `questions` holds the dumped question union (see `questions.py`),
    `allowed_users` the ids allowed to answer a private quiz and `results`
    the ids of the results submitted so far.
    """
    __table_args__ = {"sqlite_autoincrement": True}

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, foreign_key="user.id")
    title: str
    expiration: datetime
    is_public: bool = True
    questions: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    allowed_users: List[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    show_correct_answers: bool = True
    allow_multiple_responses: bool = False
    results: List[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)


class Result(SQLModel, table=True):
    """A graded response by one user to one quiz.

    `exclusive` records that the quiz accepted a single response when this
    result was stored; the partial unique index below enforces that rule
    at the storage level.
    """
    __table_args__ = (
        Index(
            "uq_result_single_response",
            "user_id",
            "quiz_id",
            unique=True,
            sqlite_where=text("exclusive"),
            postgresql_where=text("exclusive"),
        ),
        {"sqlite_autoincrement": True},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, foreign_key="user.id")
    quiz_id: int = Field(index=True, foreign_key="quiz.id")
    quiz_owner_id: int = Field(foreign_key="user.id")
    answers: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    score: float = 0.0
    exclusive: bool = True
    created_at: datetime = Field(default_factory=utcnow)
