"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the quiz backend. Controllers
are intentionally thin: they authenticate the caller, build services
from the request-scoped session and return JSON. Service errors become
`{"errors": [...]}` responses through the exception handlers below.

Endpoints implemented:
- POST /users, POST /users/auth
- GET /users/me, /users/me/quizzes, /users/me/results, /users/{id}
- PUT /users/me/email, /users/me/password
- DELETE /users/me
- POST /quizzes, GET /quizzes/{id}, GET /quizzes/{id}/form
- PUT /quizzes/{id}/edit, DELETE /quizzes/{id}
- GET /results, POST /results
- GET /health
"""

import json
import logging
import time
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlmodel import Session

from . import models, repositories, schemas, services
from .auth import get_current_user
from .config import settings
from .database import create_db_and_tables, get_session
from .errors import FieldError, ServiceError
from .grading import GradingService

app = FastAPI(title="Quiz API")
logger = logging.getLogger("quizhub.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
                "client": request.client.host if request.client else "unknown",
            },
            ensure_ascii=True,
        ),
    )
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if not exc.errors:
        return Response(status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content={"errors": [e.to_dict() for e in exc.errors]})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Report malformed requests as 400s in the same shape as service errors."""
    errors = []
    for err in exc.errors():
        loc = [p for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        field = next((p for p in loc if isinstance(p, str)), None)
        index = next((p for p in loc if isinstance(p, int)), None)
        errors.append(FieldError(field=field, index=index, message=err.get("msg", "invalid value"), value=err.get("input")))
    return JSONResponse(status_code=400, content={"errors": [e.to_dict() for e in errors]})


def get_user_service(db: Session = Depends(get_session)) -> services.UserService:
    return services.UserService(
        repositories.UserRepository(db), repositories.QuizRepository(db), repositories.ResultRepository(db)
    )


def get_quiz_service(db: Session = Depends(get_session)) -> services.QuizService:
    return services.QuizService(
        repositories.QuizRepository(db), repositories.ResultRepository(db), repositories.UserRepository(db)
    )


def get_result_service(db: Session = Depends(get_session)) -> services.ResultService:
    return services.ResultService(
        repositories.ResultRepository(db), repositories.QuizRepository(db), repositories.UserRepository(db)
    )


def get_grading_service(db: Session = Depends(get_session)) -> GradingService:
    return GradingService(
        repositories.ResultRepository(db), repositories.QuizRepository(db), repositories.UserRepository(db)
    )


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


@app.post('/users', response_model=schemas.TokenOut)
def register(payload: schemas.RegisterIn, svc: services.UserService = Depends(get_user_service)):
    """Register a new user and return an access token.

    Responds 409 listing every conflict if the username or the email is
    already taken.
    """
    token = svc.register(payload.username, payload.email, payload.password)
    return {'access_token': token}


@app.post('/users/auth', response_model=schemas.TokenOut)
def login(payload: schemas.LoginIn, svc: services.UserService = Depends(get_user_service)):
    """Authenticate a user and return a short-lived JWT token."""
    return {'access_token': svc.authenticate(payload.username, payload.password)}


@app.get('/users/me')
def get_me(user: models.User = Depends(get_current_user), svc: services.UserService = Depends(get_user_service)):
    return svc.get_user(user.id)


@app.get('/users/me/quizzes')
def get_my_quizzes(
    format: schemas.Format = "full",
    user: models.User = Depends(get_current_user),
    svc: services.QuizService = Depends(get_quiz_service),
):
    """Return the caller's quizzes in `full` (default) or `listing` format."""
    return svc.list_user_quizzes(user.id, format)


@app.get('/users/me/results')
def get_my_results(
    format: schemas.Format = "full",
    user: models.User = Depends(get_current_user),
    svc: services.ResultService = Depends(get_result_service),
):
    """Return the caller's results in `full` (default) or `listing` format."""
    return svc.list_user_results(user.id, format)


@app.put('/users/me/email', status_code=204)
def change_email(
    payload: schemas.EmailIn,
    user: models.User = Depends(get_current_user),
    svc: services.UserService = Depends(get_user_service),
):
    svc.change_email(user.id, payload.email)
    return Response(status_code=204)


@app.put('/users/me/password', status_code=204)
def change_password(
    payload: schemas.PasswordIn,
    user: models.User = Depends(get_current_user),
    svc: services.UserService = Depends(get_user_service),
):
    svc.change_password(user.id, payload.password)
    return Response(status_code=204)


@app.delete('/users/me', status_code=204)
def delete_me(user: models.User = Depends(get_current_user), svc: services.UserService = Depends(get_user_service)):
    """Delete the caller's account with all of their quizzes and results."""
    svc.delete_user(user.id)
    return Response(status_code=204)


@app.get('/users/{user_id}')
def get_user(user_id: int, svc: services.UserService = Depends(get_user_service)):
    """Return a user's public data."""
    return svc.get_public_user(user_id)


@app.post('/quizzes', response_model=schemas.CreatedOut)
def create_quiz(
    payload: schemas.QuizIn,
    user: models.User = Depends(get_current_user),
    svc: services.QuizService = Depends(get_quiz_service),
):
    """Create a quiz owned by the caller.

    `allowed_users` lists usernames. Every problem with the payload is
    reported at once with status 400.
    """
    quiz = svc.create_quiz(payload, user.id)
    return {'id': quiz.id}


@app.get('/quizzes/{quiz_id}')
def get_quiz(
    quiz_id: int,
    format: schemas.Format = "full",
    user: models.User = Depends(get_current_user),
    svc: services.QuizService = Depends(get_quiz_service),
):
    """Return an owned quiz in `full` (default) or `listing` format."""
    if format == "listing":
        return svc.get_quiz_listing(quiz_id, user.id)
    return svc.get_full_quiz(quiz_id, user.id)


@app.get('/quizzes/{quiz_id}/form')
def get_quiz_form(
    quiz_id: int,
    user: models.User = Depends(get_current_user),
    svc: services.QuizService = Depends(get_quiz_service),
):
    """Return a quiz as a form to answer, without correct answers."""
    return svc.get_quiz_form(quiz_id, user.id)


@app.put('/quizzes/{quiz_id}/edit', status_code=204)
def edit_quiz(
    quiz_id: int,
    payload: schemas.QuizIn,
    user: models.User = Depends(get_current_user),
    svc: services.QuizService = Depends(get_quiz_service),
):
    """Edit an owned quiz.

    Changing a correct answer, the number of choices or the number of
    questions is refused with 409 so that existing results stay valid.
    """
    svc.update_quiz(quiz_id, payload, user.id)
    return Response(status_code=204)


@app.delete('/quizzes/{quiz_id}', status_code=204)
def delete_quiz(
    quiz_id: int,
    user: models.User = Depends(get_current_user),
    svc: services.QuizService = Depends(get_quiz_service),
):
    svc.delete_quiz(quiz_id, user.id)
    return Response(status_code=204)


@app.get('/results')
def get_results(
    quiz: int,
    respondent_id: Optional[int] = Query(None, alias="user"),
    format: schemas.Format = "full",
    user: models.User = Depends(get_current_user),
    svc: services.ResultService = Depends(get_result_service),
):
    """Return results for a quiz.

    Without `user`, every result of the quiz (owner only). With `user`,
    that user's result, visible to the respondent and to the quiz owner.
    """
    if respondent_id is None:
        return {'results': svc.list_quiz_results(quiz, user.id, format)}
    return svc.get_user_result(quiz, respondent_id, user.id, format)


@app.post('/results', response_model=schemas.CreatedOut)
def post_result(
    quiz: int,
    submission: schemas.SubmissionIn,
    user: models.User = Depends(get_current_user),
    quizzes: services.QuizService = Depends(get_quiz_service),
    grading: GradingService = Depends(get_grading_service),
):
    """Grade the caller's answers to a quiz and store the result."""
    result = grading.submit_answers(quizzes.get_quiz(quiz), user.id, submission.answers)
    return {'id': result.id}
