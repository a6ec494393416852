from datetime import timedelta
from pathlib import Path
import os
import uuid

import pytest

# The API tests import `quizhub.main`, which creates its tables on import;
# point it at a throw-away file before anything from the package is loaded.
TEST_DB = Path(__file__).resolve().parents[1] / "test_quizhub.db"
if TEST_DB.exists():
    TEST_DB.unlink()
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB}"
os.environ.setdefault("ALLOW_DEV_CORS", "false")

from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, create_engine  # noqa: E402

from quizhub import models, repositories, services  # noqa: E402
from quizhub.database import create_db_and_tables  # noqa: E402
from quizhub.grading import GradingService  # noqa: E402
from quizhub.schemas import QuizIn, SubmissionIn  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def reset_db():
    """Remove the throw-away SQLite database after the test session."""
    yield
    from quizhub.database import engine

    engine.dispose()
    if TEST_DB.exists():
        try:
            TEST_DB.unlink()
        except OSError:
            pass


def unique_name(prefix: str = "u") -> str:
    """Return a fresh valid username (alphanumeric, at most 12 characters)."""
    return f"{prefix}{uuid.uuid4().hex[:11 - len(prefix)]}"


def future(days: int = 1):
    return models.utcnow() + timedelta(days=days)


def sample_questions():
    return [
        {
            "type": "MultipleChoice",
            "text": "Capital of France?",
            "correct_answer": 1,
            "answers": [{"text": "Lyon"}, {"text": "Paris"}, {"text": "Nice"}],
        },
        {"type": "FillIn", "text": "Capital of Italy?", "correct_answer": "Rome"},
    ]


def typed_answers(*raw):
    """Parse raw answer dicts the same way a request body is parsed."""
    return SubmissionIn(answers=list(raw)).answers


@pytest.fixture
def session():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    create_db_and_tables(engine)
    with Session(engine) as s:
        yield s
    engine.dispose()


@pytest.fixture
def users(session):
    return repositories.UserRepository(session)


@pytest.fixture
def quizzes(session):
    return repositories.QuizRepository(session)


@pytest.fixture
def results(session):
    return repositories.ResultRepository(session)


@pytest.fixture
def user_service(users, quizzes, results):
    return services.UserService(users, quizzes, results)


@pytest.fixture
def quiz_service(quizzes, results, users):
    return services.QuizService(quizzes, results, users)


@pytest.fixture
def result_service(results, quizzes, users):
    return services.ResultService(results, quizzes, users)


@pytest.fixture
def grading(results, quizzes, users):
    return GradingService(results, quizzes, users)


@pytest.fixture
def make_user(users):
    def _make(username=None):
        username = username or unique_name()
        return users.create(models.User(username=username, email=f"{username}@mail.com", password_hash="x"))
    return _make


@pytest.fixture
def make_quiz(quiz_service):
    def _make(owner, **overrides):
        data = {
            "title": "Capitals",
            "expiration": future(),
            "is_public": True,
            "questions": sample_questions(),
        }
        data.update(overrides)
        return quiz_service.create_quiz(QuizIn(**data), owner.id)
    return _make
