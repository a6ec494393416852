"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
quizzes, results). Repositories return SQLModel objects and commit after
every write. Back-reference lists behave like sets: adding an id twice or
removing a missing id is a no-op, so cascades can be retried safely.
"""

from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import models
from .errors import DuplicateResultError


def _with_id(ids: List[int], item_id: int) -> List[int]:
    return list(ids) if item_id in ids else [*ids, item_id]


def _without_id(ids: List[int], item_id: int) -> List[int]:
    return [i for i in ids if i != item_id]


class UserRepository:
    """CRUD operations for `User` objects and their back-reference lists."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get_by_email(self, email: str) -> Optional[models.User]:
        stmt = select(models.User).where(models.User.email == email)
        return self.session.exec(stmt).first()

    def get_usernames(self, user_ids: Iterable[int]) -> List[str]:
        """Return the usernames for `user_ids`, in the given order.

        Ids without a matching user are skipped.
        """
        ids = list(user_ids)
        if not ids:
            return []
        stmt = select(models.User).where(models.User.id.in_(ids))
        by_id = {u.id: u.username for u in self.session.exec(stmt).all()}
        return [by_id[i] for i in ids if i in by_id]

    def get_user_ids(self, usernames: Iterable[str]) -> List[int]:
        """Return the ids of the users with the given usernames; unknown names are skipped."""
        names = list(dict.fromkeys(usernames))
        if not names:
            return []
        stmt = select(models.User).where(models.User.username.in_(names))
        by_name = {u.username: u.id for u in self.session.exec(stmt).all()}
        return [by_name[n] for n in names if n in by_name]

    def add_quiz(self, user_id: int, quiz_id: int) -> None:
        user = self.get(user_id)
        if user is None:
            return
        user.quizzes = _with_id(user.quizzes, quiz_id)
        self._save(user)

    def remove_quiz(self, user_id: int, quiz_id: int) -> None:
        user = self.get(user_id)
        if user is None:
            return
        user.quizzes = _without_id(user.quizzes, quiz_id)
        self._save(user)

    def add_result(self, user_id: int, result_id: int) -> None:
        user = self.get(user_id)
        if user is None:
            return
        user.results = _with_id(user.results, result_id)
        self._save(user)

    def remove_result(self, user_id: int, result_id: int) -> None:
        user = self.get(user_id)
        if user is None:
            return
        user.results = _without_id(user.results, result_id)
        self._save(user)

    def update_email(self, user_id: int, email: str) -> None:
        user = self.get(user_id)
        if user is None:
            return
        user.email = email
        self._save(user)

    def update_password(self, user_id: int, password_hash: str) -> None:
        user = self.get(user_id)
        if user is None:
            return
        user.password_hash = password_hash
        self._save(user)

    def delete(self, user_id: int) -> None:
        user = self.get(user_id)
        if user is None:
            return
        self.session.delete(user)
        self.session.commit()

    def _save(self, user: models.User) -> None:
        self.session.add(user)
        self.session.commit()


class QuizRepository:
    """CRUD operations for `Quiz` documents."""
    IMMUTABLE_FIELDS = frozenset({"id", "user_id", "results", "created_at"})

    def __init__(self, session: Session):
        self.session = session

    def create(self, quiz: models.Quiz) -> models.Quiz:
        """Persist a new quiz and return the managed instance."""
        self.session.add(quiz)
        self.session.commit()
        self.session.refresh(quiz)
        return quiz

    def get(self, quiz_id: int) -> Optional[models.Quiz]:
        """Fetch a quiz by id."""
        return self.session.get(models.Quiz, quiz_id)

    def list_by_user(self, user_id: int) -> List[models.Quiz]:
        """Return every quiz owned by `user_id`."""
        stmt = select(models.Quiz).where(models.Quiz.user_id == user_id).order_by(models.Quiz.id)
        return self.session.exec(stmt).all()

    def update(self, quiz_id: int, fields: dict) -> Optional[models.Quiz]:
        """Replace the given mutable fields of a quiz.

        The owner, the result back-references and the identity of a quiz
        can not be changed through this method.
        """
        forbidden = self.IMMUTABLE_FIELDS.intersection(fields)
        if forbidden:
            raise ValueError(f"immutable quiz fields: {sorted(forbidden)}")
        quiz = self.get(quiz_id)
        if quiz is None:
            return None
        for name, value in fields.items():
            setattr(quiz, name, value)
        self.session.add(quiz)
        self.session.commit()
        self.session.refresh(quiz)
        return quiz

    def add_result(self, quiz_id: int, result_id: int) -> None:
        quiz = self.get(quiz_id)
        if quiz is None:
            return
        quiz.results = _with_id(quiz.results, result_id)
        self.session.add(quiz)
        self.session.commit()

    def remove_result(self, quiz_id: int, result_id: int) -> None:
        quiz = self.get(quiz_id)
        if quiz is None:
            return
        quiz.results = _without_id(quiz.results, result_id)
        self.session.add(quiz)
        self.session.commit()

    def delete(self, quiz_id: int) -> None:
        quiz = self.get(quiz_id)
        if quiz is None:
            return
        self.session.delete(quiz)
        self.session.commit()

    def remove_allowed_user(self, user_id: int) -> int:
        """Drop `user_id` from every quiz allow-list; returns the number of quizzes changed."""
        changed = 0
        for quiz in self.session.exec(select(models.Quiz)).all():
            if user_id in quiz.allowed_users:
                quiz.allowed_users = _without_id(quiz.allowed_users, user_id)
                self.session.add(quiz)
                changed += 1
        self.session.commit()
        return changed

    def delete_by_user(self, user_id: int) -> int:
        """Delete every quiz owned by `user_id` and return how many were removed."""
        quizzes = self.list_by_user(user_id)
        for quiz in quizzes:
            self.session.delete(quiz)
        self.session.commit()
        return len(quizzes)


class ResultRepository:
    """Persist and query graded `Result` documents."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, result: models.Result) -> models.Result:
        """Store a result.

        Raises `DuplicateResultError` when the single-response index
        rejects the row, i.e. another exclusive result for the same user
        and quiz was stored first.
        """
        self.session.add(result)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            if result.exclusive and self.find_by_user_and_quiz(result.user_id, result.quiz_id):
                raise DuplicateResultError(f"user {result.user_id} already answered quiz {result.quiz_id}")
            raise
        self.session.refresh(result)
        return result

    def get(self, result_id: int) -> Optional[models.Result]:
        """Fetch a result by id."""
        return self.session.get(models.Result, result_id)

    def find_by_user_and_quiz(self, user_id: int, quiz_id: int) -> Optional[models.Result]:
        """Return the first result `user_id` submitted for `quiz_id`, if any."""
        stmt = (
            select(models.Result)
            .where(models.Result.user_id == user_id, models.Result.quiz_id == quiz_id)
            .order_by(models.Result.id)
        )
        return self.session.exec(stmt).first()

    def list_by_quiz(self, quiz_id: int) -> List[models.Result]:
        stmt = select(models.Result).where(models.Result.quiz_id == quiz_id).order_by(models.Result.id)
        return self.session.exec(stmt).all()

    def list_by_user(self, user_id: int) -> List[models.Result]:
        stmt = select(models.Result).where(models.Result.user_id == user_id).order_by(models.Result.id)
        return self.session.exec(stmt).all()

    def delete(self, result_id: int) -> None:
        result = self.get(result_id)
        if result is None:
            return
        self.session.delete(result)
        self.session.commit()

    def delete_by_user(self, user_id: int) -> int:
        """Delete every result submitted by `user_id`; returns the count deleted."""
        return self._delete_all(self.list_by_user(user_id))

    def delete_if_quiz_in(self, quiz_ids: Iterable[int]) -> int:
        """Delete every result whose quiz is one of `quiz_ids`; returns the count deleted."""
        ids = list(quiz_ids)
        if not ids:
            return 0
        stmt = select(models.Result).where(models.Result.quiz_id.in_(ids))
        return self._delete_all(self.session.exec(stmt).all())

    def _delete_all(self, results: List[models.Result]) -> int:
        for result in results:
            self.session.delete(result)
        self.session.commit()
        return len(results)
