"""Payload validation rules.

Every helper here accumulates `FieldError`s instead of stopping at the
first problem, so one request reports everything that is wrong with it.
"""

import re
from datetime import datetime
from typing import List, Optional

from .errors import FieldError
from .models import as_utc, utcnow
from .questions import (
    FillInQuestion,
    MultipleChoiceQuestion,
    QuestionError,
    validate_question,
)

MIN_USERNAME_LEN = 5
MAX_USERNAME_LEN = 12
MIN_PASSWORD_LEN = 8
MAX_PASSWORD_LEN = 20

_USERNAME_RE = re.compile(r"^[a-z0-9]+$", re.IGNORECASE)

EXPIRATION_MESSAGE = "Expiration must be a date and time in the future"
PASSWORD_MESSAGE = f"Password must be between {MIN_PASSWORD_LEN} and {MAX_PASSWORD_LEN} characters long."
QUESTIONS_CONFLICT_MESSAGE = "Cannot change correct answers or number of questions for existing quiz"


def is_valid_username(username) -> bool:
    return (
        isinstance(username, str)
        and MIN_USERNAME_LEN <= len(username) <= MAX_USERNAME_LEN
        and _USERNAME_RE.match(username) is not None
    )


def is_valid_password(password) -> bool:
    return isinstance(password, str) and MIN_PASSWORD_LEN <= len(password) <= MAX_PASSWORD_LEN


def is_valid_title(title: Optional[str]) -> bool:
    return title is not None and len(title) > 0


def is_valid_expiration(expiration: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Return True if `expiration` lies strictly in the future."""
    if expiration is None:
        return False
    return as_utc(expiration) > as_utc(now or utcnow())


def same_instant(a: Optional[datetime], b: Optional[datetime]) -> bool:
    if a is None or b is None:
        return a is b
    return as_utc(a) == as_utc(b)


def validate_credentials(username: str, password: str) -> List[FieldError]:
    errors = []
    if not is_valid_username(username):
        errors.append(FieldError(
            field="username",
            message=f"Username must be an alphanumeric string between {MIN_USERNAME_LEN} and {MAX_USERNAME_LEN} characters.",
            value=username,
        ))
    if not is_valid_password(password):
        errors.append(FieldError(field="password", message=PASSWORD_MESSAGE))
    return errors


def validate_quiz_payload(payload, check_expiration: bool = True, now: Optional[datetime] = None) -> List[FieldError]:
    """Check a quiz creation or edit payload.

    Edits pass `check_expiration=False`; their expiration is checked
    against the stored value during reconciliation.
    """
    errors = []
    if not is_valid_title(payload.title):
        errors.append(FieldError(field="title", message="Title can't be empty", value=payload.title))
    if check_expiration and not is_valid_expiration(payload.expiration, now):
        errors.append(FieldError(field="expiration", message=EXPIRATION_MESSAGE, value=payload.expiration))
    bad_usernames = [u for u in payload.allowed_users if not is_valid_username(u)]
    if bad_usernames:
        errors.append(FieldError(
            field="allowed_users",
            message="Allowed users must be an array of usernames",
            value=bad_usernames,
        ))
    if not payload.questions:
        errors.append(FieldError(field="questions", message="There must be at least one question"))
    for index, question in enumerate(payload.questions):
        try:
            validate_question(question)
        except QuestionError as e:
            errors.append(FieldError(field="questions", index=index, message=str(e)))
    return errors


def questions_compatible(original, edited) -> bool:
    """Return True if `edited` grades exactly like `original`.

    Both must have the same type and correct answer; multiple-choice
    questions must also keep their number of choices. Prompt and choice
    texts may differ.
    """
    if isinstance(original, MultipleChoiceQuestion):
        return (
            isinstance(edited, MultipleChoiceQuestion)
            and original.correct_answer == edited.correct_answer
            and len(original.answers) == len(edited.answers)
        )
    if isinstance(original, FillInQuestion):
        return isinstance(edited, FillInQuestion) and original.correct_answer == edited.correct_answer
    raise TypeError(f"unsupported question: {type(original).__name__}")


def question_sets_compatible(original: list, edited: list) -> bool:
    return len(original) == len(edited) and all(
        questions_compatible(a, b) for a, b in zip(original, edited)
    )
