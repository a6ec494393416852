"""Pydantic request schemas used by the API.

Schemas only describe the syntactic shape of a request; business rules
(non-empty texts, index ranges, future dates) are checked by
`validation.py` and the services so that they can be reported together.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr

from .questions import Answer, Question

Format = Literal["full", "listing"]


class RegisterIn(BaseModel):
    """Payload for user registration."""
    username: str
    email: EmailStr
    password: str


class LoginIn(BaseModel):
    username: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str


class EmailIn(BaseModel):
    email: EmailStr


class PasswordIn(BaseModel):
    password: str


class QuizIn(BaseModel):
    """Quiz creation and edit payload.

    `allowed_users` holds usernames. The response-policy flags are optional
    so that an edit can leave them untouched; a new quiz shows correct
    answers and accepts one response per user unless told otherwise.
    """
    title: str = ""
    expiration: datetime
    is_public: bool
    questions: List[Question] = []
    allowed_users: List[str] = []
    show_correct_answers: Optional[bool] = None
    allow_multiple_responses: Optional[bool] = None


class SubmissionIn(BaseModel):
    """Answers to a quiz, one per question and in question order."""
    answers: List[Answer]


class CreatedOut(BaseModel):
    id: int
