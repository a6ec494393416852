"""Business logic services used by HTTP controllers.

Services receive their repositories through the constructor, apply the
business rules and raise `errors.ServiceError` subclasses for every
predictable failure. Grading lives in `grading.py`; this module covers
accounts, quiz authoring and editing, result queries and the cascades that
keep back-references consistent when quizzes or users are deleted.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

import jwt
from passlib.context import CryptContext

from . import models
from .config import settings
from .errors import Conflict, FieldError, Forbidden, NotFound, ValidationFailed
from .grading import can_view_quiz
from .questions import dump_questions, load_questions, strip_correct_answer
from .repositories import QuizRepository, ResultRepository, UserRepository
from .validation import (
    EXPIRATION_MESSAGE,
    PASSWORD_MESSAGE,
    QUESTIONS_CONFLICT_MESSAGE,
    is_valid_expiration,
    is_valid_password,
    question_sets_compatible,
    same_instant,
    validate_credentials,
    validate_quiz_payload,
)

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

logger = logging.getLogger("quizhub.services")


def create_access_token(user: models.User) -> str:
    """Return a signed JWT carrying the user's id and username."""
    expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
    payload = {"user_id": user.id, "username": user.username, "exp": int(expire.timestamp())}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return models.as_utc(value).isoformat() if value is not None else None


def quiz_document(quiz: models.Quiz) -> dict:
    return {
        "id": quiz.id,
        "user_id": quiz.user_id,
        "title": quiz.title,
        "expiration": _iso(quiz.expiration),
        "is_public": quiz.is_public,
        "questions": list(quiz.questions),
        "allowed_users": list(quiz.allowed_users),
        "show_correct_answers": quiz.show_correct_answers,
        "allow_multiple_responses": quiz.allow_multiple_responses,
        "results": list(quiz.results),
        "created_at": _iso(quiz.created_at),
    }


def result_document(result: models.Result, format: str = "full") -> dict:
    doc = {
        "id": result.id,
        "user_id": result.user_id,
        "quiz_id": result.quiz_id,
        "quiz_owner_id": result.quiz_owner_id,
        "score": result.score,
        "created_at": _iso(result.created_at),
    }
    if format == "full":
        doc["answers"] = list(result.answers)
    return doc


class UserService:
    """Accounts: registration, login, profile changes and account deletion."""
    def __init__(self, users: UserRepository, quizzes: QuizRepository, results: ResultRepository):
        self.users = users
        self.quizzes = quizzes
        self.results = results

    def register(self, username: str, email: str, password: str) -> str:
        """Create a user with a hashed password and return an access token.

        Username and email conflicts are reported together.
        """
        errors = validate_credentials(username, password)
        if errors:
            raise ValidationFailed(errors)
        conflicts = []
        if self.users.get_by_email(email):
            conflicts.append(FieldError(field="email", message="Email is already in use.", value=email))
        if self.users.get_by_username(username):
            conflicts.append(FieldError(field="username", message="Username is already in use.", value=username))
        if conflicts:
            raise Conflict(conflicts)
        user = self.users.create(models.User(username=username, email=email, password_hash=PWD_CTX.hash(password)))
        logger.info("user registered id=%s", user.id)
        return create_access_token(user)

    def authenticate(self, username: str, password: str) -> str:
        """Verify credentials and return a signed JWT token."""
        user = self.users.get_by_username(username)
        if not user:
            raise ValidationFailed([FieldError(field="username", message="No matching username found.", value=username)])
        if not PWD_CTX.verify(password, user.password_hash):
            raise ValidationFailed([FieldError(field="password", message="Invalid credentials.")])
        return create_access_token(user)

    def get_user(self, user_id: int) -> dict:
        """Return the private view of a user (everything but the password hash)."""
        user = self._require(user_id)
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "quizzes": list(user.quizzes),
            "results": list(user.results),
            "created_at": _iso(user.created_at),
        }

    def get_public_user(self, user_id: int) -> dict:
        user = self._require(user_id)
        return {"id": user.id, "username": user.username, "quizzes": list(user.quizzes)}

    def change_email(self, user_id: int, email: str) -> None:
        existing = self.users.get_by_email(email)
        if existing is not None and existing.id != user_id:
            raise Conflict([FieldError(field="email", message="Email is already in use.", value=email)])
        self.users.update_email(user_id, email)

    def change_password(self, user_id: int, password: str) -> None:
        if not is_valid_password(password):
            raise ValidationFailed([FieldError(field="password", message=PASSWORD_MESSAGE)])
        self.users.update_password(user_id, PWD_CTX.hash(password))

    def delete_user(self, user_id: int) -> None:
        """Delete a user together with everything they created.

        The user's own results go first (and are unlinked from the quizzes
        they answered), then every result of the user's quizzes (unlinked
        from their respondents), then the quizzes. The user is then dropped
        from every remaining allow-list and the row deleted.
        Every step tolerates already-deleted rows, so a retry after a
        partial failure finishes the job.
        """
        user = self._require(user_id)
        for result in self.results.list_by_user(user_id):
            self.quizzes.remove_result(result.quiz_id, result.id)
        removed_results = self.results.delete_by_user(user_id)

        quiz_ids = [quiz.id for quiz in self.quizzes.list_by_user(user_id)]
        for quiz_id in quiz_ids:
            for result in self.results.list_by_quiz(quiz_id):
                self.users.remove_result(result.user_id, result.id)
        removed_quiz_results = self.results.delete_if_quiz_in(quiz_ids)
        removed_quizzes = self.quizzes.delete_by_user(user_id)
        unlisted = self.quizzes.remove_allowed_user(user_id)

        self.users.delete(user.id)
        logger.info(
            "user deleted id=%s results=%d quizzes=%d quiz_results=%d unlisted=%d",
            user_id, removed_results, removed_quizzes, removed_quiz_results, unlisted,
        )

    def _require(self, user_id: int) -> models.User:
        user = self.users.get(user_id)
        if user is None:
            raise NotFound(message=f"user {user_id} not found")
        return user


class QuizService:
    """Quiz authoring: creation, views, edit reconciliation and deletion."""
    def __init__(
        self,
        quizzes: QuizRepository,
        results: ResultRepository,
        users: UserRepository,
        clock: Callable[[], datetime] = models.utcnow,
    ):
        self.quizzes = quizzes
        self.results = results
        self.users = users
        self.clock = clock

    def get_quiz(self, quiz_id: int) -> models.Quiz:
        quiz = self.quizzes.get(quiz_id)
        if quiz is None:
            raise NotFound(message=f"quiz {quiz_id} not found")
        return quiz

    def create_quiz(self, payload, user_id: int) -> models.Quiz:
        """Validate and store a new quiz owned by `user_id`.

        `payload.allowed_users` are usernames; unknown names are dropped.
        """
        errors = validate_quiz_payload(payload, now=self.clock())
        if errors:
            raise ValidationFailed(errors)
        quiz = models.Quiz(
            user_id=user_id,
            title=payload.title,
            expiration=models.as_utc(payload.expiration),
            is_public=payload.is_public,
            questions=dump_questions(payload.questions),
            allowed_users=self.users.get_user_ids(payload.allowed_users),
            show_correct_answers=True if payload.show_correct_answers is None else payload.show_correct_answers,
            allow_multiple_responses=bool(payload.allow_multiple_responses),
        )
        quiz = self.quizzes.create(quiz)
        self.users.add_quiz(user_id, quiz.id)
        logger.info("quiz created id=%s owner=%s questions=%d", quiz.id, user_id, len(payload.questions))
        return quiz

    def get_full_quiz(self, quiz_id: int, user_id: int) -> dict:
        """Return every field of an owned quiz, with the allow-list as usernames."""
        quiz = self._owned(quiz_id, user_id)
        doc = quiz_document(quiz)
        doc["allowed_users"] = self.users.get_usernames(quiz.allowed_users)
        return doc

    def get_quiz_listing(self, quiz_id: int, user_id: int) -> dict:
        return self._listing(self._owned(quiz_id, user_id))

    def get_quiz_form(self, quiz_id: int, user_id: int) -> dict:
        """Return the quiz as a form to answer, without any correct answers."""
        quiz = self.get_quiz(quiz_id)
        if not can_view_quiz(user_id, quiz):
            raise Forbidden(message=f"user {user_id} can not view quiz {quiz_id}")
        owner = self.users.get_usernames([quiz.user_id])
        return {
            "id": quiz.id,
            "title": quiz.title,
            "expiration": _iso(quiz.expiration),
            "created_at": _iso(quiz.created_at),
            "questions": [strip_correct_answer(q) for q in load_questions(quiz.questions)],
            "user": owner[0] if owner else None,
        }

    def list_user_quizzes(self, user_id: int, format: str = "full") -> List[dict]:
        quizzes = self.quizzes.list_by_user(user_id)
        if format == "listing":
            return [self._listing(q) for q in quizzes]
        docs = []
        for quiz in quizzes:
            doc = quiz_document(quiz)
            doc["allowed_users"] = self.users.get_usernames(quiz.allowed_users)
            docs.append(doc)
        return docs

    def update_quiz(self, quiz_id: int, edits, user_id: int) -> models.Quiz:
        """Apply an owner's edit without invalidating submitted results.

        Payload, expiration and question checks are collected together; a
        question conflict makes the whole edit a `Conflict`, other problems
        a `ValidationFailed`. Nothing is written unless every check passes.
        The stored allow-list is the edit's list plus every user that has
        already answered the quiz.
        """
        quiz = self.get_quiz(quiz_id)
        if quiz.user_id != user_id:
            raise Forbidden(message=f"user {user_id} does not own quiz {quiz_id}")

        errors = validate_quiz_payload(edits, check_expiration=False)
        expiration_unchanged = same_instant(edits.expiration, quiz.expiration)
        if not expiration_unchanged and not is_valid_expiration(edits.expiration, self.clock()):
            errors.append(FieldError(field="expiration", message=EXPIRATION_MESSAGE, value=edits.expiration))
        questions_conflict = not question_sets_compatible(load_questions(quiz.questions), edits.questions)
        if questions_conflict:
            errors.append(FieldError(field="questions", message=QUESTIONS_CONFLICT_MESSAGE))
        if errors:
            logger.info("quiz edit rejected id=%s errors=%d", quiz_id, len(errors))
            if questions_conflict:
                raise Conflict(errors)
            raise ValidationFailed(errors)

        allowed_users = self.users.get_user_ids(edits.allowed_users)
        for respondent_id in self._respondent_ids(quiz):
            if respondent_id not in allowed_users:
                allowed_users.append(respondent_id)

        fields = {
            "title": edits.title,
            "is_public": edits.is_public,
            "expiration": quiz.expiration if expiration_unchanged else models.as_utc(edits.expiration),
            "questions": dump_questions(edits.questions),
            "allowed_users": allowed_users,
        }
        if edits.show_correct_answers is not None:
            fields["show_correct_answers"] = edits.show_correct_answers
        if edits.allow_multiple_responses is not None:
            fields["allow_multiple_responses"] = edits.allow_multiple_responses
        logger.info("quiz edited id=%s", quiz_id)
        return self.quizzes.update(quiz.id, fields)

    def delete_quiz(self, quiz_id: int, user_id: int) -> None:
        """Delete an owned quiz after its results and back-references.

        Results are removed before the quiz itself, so an interrupted
        delete leaves at worst orphaned results, never a quiz pointing at
        missing results.
        """
        quiz = self.get_quiz(quiz_id)
        if quiz.user_id != user_id:
            raise Forbidden(message=f"user {user_id} does not own quiz {quiz_id}")
        owner_id = quiz.user_id
        for result_id in list(quiz.results):
            result = self.results.get(result_id)
            if result is not None:
                self.results.delete(result_id)
                self.users.remove_result(result.user_id, result_id)
        self.users.remove_quiz(owner_id, quiz_id)
        self.quizzes.delete(quiz_id)
        logger.info("quiz deleted id=%s", quiz_id)

    def _owned(self, quiz_id: int, user_id: int) -> models.Quiz:
        quiz = self.get_quiz(quiz_id)
        if quiz.user_id != user_id:
            raise Forbidden(message=f"user {user_id} does not own quiz {quiz_id}")
        return quiz

    def _listing(self, quiz: models.Quiz) -> dict:
        doc = quiz_document(quiz)
        for name in ("questions", "results", "allowed_users"):
            doc.pop(name)
        doc["results_count"] = len(quiz.results)
        doc["question_count"] = len(quiz.questions)
        return doc

    def _respondent_ids(self, quiz: models.Quiz) -> Iterable[int]:
        for result_id in quiz.results:
            result = self.results.get(result_id)
            if result is None:
                continue
            respondent = self.users.get(result.user_id)
            if respondent is not None:
                yield respondent.id


class ResultService:
    """Read access to results for respondents and quiz owners."""
    def __init__(self, results: ResultRepository, quizzes: QuizRepository, users: UserRepository):
        self.results = results
        self.quizzes = quizzes
        self.users = users

    def list_quiz_results(self, quiz_id: int, user_id: int, format: str = "full") -> List[dict]:
        """Return every result of a quiz; only its owner may ask."""
        quiz = self.quizzes.get(quiz_id)
        if quiz is None:
            raise NotFound(message=f"quiz {quiz_id} not found")
        if quiz.user_id != user_id:
            raise Forbidden(message=f"user {user_id} does not own quiz {quiz_id}")
        docs = []
        for result_id in quiz.results:
            result = self.results.get(result_id)
            if result is not None:
                doc = result_document(result, format)
                doc["username"] = self._username(result.user_id)
                docs.append(doc)
        return docs

    def get_user_result(self, quiz_id: int, respondent_id: int, user_id: int, format: str = "full") -> dict:
        """Return one respondent's result; visible to the respondent and the quiz owner."""
        result = self.results.find_by_user_and_quiz(respondent_id, quiz_id)
        if result is None:
            raise NotFound(message=f"no result for user {respondent_id} and quiz {quiz_id}")
        if user_id not in (result.user_id, result.quiz_owner_id):
            raise Forbidden(message=f"user {user_id} can not view result {result.id}")
        return self._with_extras(result, format)

    def list_user_results(self, user_id: int, format: str = "full") -> List[dict]:
        return [self._with_extras(r, format) for r in self.results.list_by_user(user_id)]

    def _with_extras(self, result: models.Result, format: str) -> dict:
        doc = result_document(result, format)
        doc["username"] = self._username(result.user_id)
        quiz = self.quizzes.get(result.quiz_id)
        if quiz is not None:
            doc["quiz_title"] = quiz.title
            doc["owner_username"] = self._username(result.quiz_owner_id)
        return doc

    def _username(self, user_id: int) -> Optional[str]:
        names = self.users.get_usernames([user_id])
        return names[0] if names else None
