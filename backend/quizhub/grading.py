"""Grade quiz submissions and persist them as results.

`GradingService.submit_answers` is the only way a `Result` comes into
existence. It refuses a submission with a typed `ServiceError` before
anything is written:

- `Forbidden` when the respondent may not view the quiz;
- `ValidationFailed` when the quiz has expired, when the respondent already
  answered a single-response quiz, when the answer count does not match the
  question count, or when individual answers do not fit their questions.

Per-answer problems are collected for every index before giving up, so
one response lists every offending answer. A successful submission is
stored first and then linked from the quiz and from the respondent; the
result row is the source of truth if one of those links is lost.
"""

import logging
from datetime import datetime
from typing import Callable, List, Tuple

from . import models
from .errors import DuplicateResultError, FieldError, Forbidden, ValidationFailed
from .questions import (
    AnswerError,
    FillInAnswer,
    FillInGradedAnswer,
    FillInQuestion,
    GradedAnswer,
    MultipleChoiceAnswer,
    MultipleChoiceGradedAnswer,
    MultipleChoiceQuestion,
    dump_graded_answers,
    load_questions,
    validate_answer_shape,
)
from .repositories import QuizRepository, ResultRepository, UserRepository
from .validation import is_valid_expiration

logger = logging.getLogger("quizhub.grading")

DUPLICATE_MESSAGE = "You already responded to this quiz."
EXPIRED_MESSAGE = "Quiz has expired"


def can_view_quiz(user_id: int, quiz: models.Quiz) -> bool:
    return quiz.is_public or quiz.user_id == user_id or user_id in quiz.allowed_users


def _answer_value(answer):
    return answer.choice if isinstance(answer, MultipleChoiceAnswer) else answer.answer


def grade_answer(index: int, question, answer, show_correct_answers: bool):
    """Grade one answer against its question.

    Returns `(graded_answer, None)` on success or `(None, FieldError)` when
    the answer can not be graded.
    """
    if question.type != answer.type:
        return None, FieldError(
            field="answers",
            index=index,
            message=f"Answer type does not match Question type. Expected {question.type}",
            value=answer.type,
            expected=question.type,
        )
    try:
        validate_answer_shape(answer)
    except AnswerError as e:
        return None, FieldError(field="answers", index=index, message=str(e), value=_answer_value(answer))
    if isinstance(question, MultipleChoiceQuestion) and isinstance(answer, MultipleChoiceAnswer):
        choice_count = len(question.answers)
        if answer.choice >= choice_count:
            return None, FieldError(
                field="answers",
                index=index,
                message=f"Answer choice must be between 0 and {choice_count - 1}",
                value=answer.choice,
            )
        graded = MultipleChoiceGradedAnswer(
            choice=answer.choice,
            is_correct=answer.choice == question.correct_answer,
        )
    elif isinstance(question, FillInQuestion) and isinstance(answer, FillInAnswer):
        graded = FillInGradedAnswer(
            answer=answer.answer,
            is_correct=answer.answer == question.correct_answer,
        )
    else:
        raise TypeError(f"unsupported question/answer pair: {type(question).__name__}/{type(answer).__name__}")
    if show_correct_answers:
        graded.correct_answer = question.correct_answer
    return graded, None


def grade_answers(
    questions: list, answers: list, show_correct_answers: bool
) -> Tuple[List[GradedAnswer], float, List[FieldError]]:
    """Grade every answer and compute the score.

    Each correct answer adds `1 / len(questions)` to the score. A fully
    correct submission scores exactly 1.0.
    """
    graded_answers = []
    errors = []
    score = 0.0
    for index, (question, answer) in enumerate(zip(questions, answers)):
        graded, error = grade_answer(index, question, answer, show_correct_answers)
        if error is not None:
            errors.append(error)
            continue
        graded_answers.append(graded)
        if graded.is_correct:
            score += 1 / len(questions)
    if questions and not errors and all(g.is_correct for g in graded_answers):
        score = 1.0
    return graded_answers, min(score, 1.0), errors


class GradingService:
    """Grade submitted answers and persist results."""
    def __init__(
        self,
        results: ResultRepository,
        quizzes: QuizRepository,
        users: UserRepository,
        clock: Callable[[], datetime] = models.utcnow,
    ):
        self.results = results
        self.quizzes = quizzes
        self.users = users
        self.clock = clock

    def submit_answers(self, quiz: models.Quiz, respondent_id: int, answers: list) -> models.Result:
        """Grade `answers` for `quiz` on behalf of `respondent_id` and store the result.

        `quiz` must already be loaded; `answers` are typed answers in
        question order.
        """
        if not can_view_quiz(respondent_id, quiz):
            raise Forbidden(message=f"user {respondent_id} can not answer quiz {quiz.id}")

        if not is_valid_expiration(quiz.expiration, self.clock()):
            raise ValidationFailed([FieldError(field="expiration", message=EXPIRED_MESSAGE)])

        if not quiz.allow_multiple_responses and self._has_responded(quiz, respondent_id):
            raise ValidationFailed([FieldError(message=DUPLICATE_MESSAGE)])

        questions = load_questions(quiz.questions)
        if len(answers) != len(questions):
            raise ValidationFailed([FieldError(
                field="answers",
                message=f"Answers length must equal questions length. Expected {len(questions)}.",
                value=len(answers),
                expected=len(questions),
            )])

        graded_answers, score, errors = grade_answers(questions, answers, quiz.show_correct_answers)
        if errors:
            logger.info("submission rejected quiz=%s user=%s errors=%d", quiz.id, respondent_id, len(errors))
            raise ValidationFailed(errors)

        result = models.Result(
            user_id=respondent_id,
            quiz_id=quiz.id,
            quiz_owner_id=quiz.user_id,
            answers=dump_graded_answers(graded_answers),
            score=score,
            exclusive=not quiz.allow_multiple_responses,
        )
        try:
            result = self.results.create(result)
        except DuplicateResultError:
            # lost a race with a concurrent submission from the same user
            logger.warning("duplicate result rejected by index quiz=%s user=%s", quiz.id, respondent_id)
            raise ValidationFailed([FieldError(message=DUPLICATE_MESSAGE)])

        self.quizzes.add_result(quiz.id, result.id)
        self.users.add_result(respondent_id, result.id)
        logger.info("result stored id=%s quiz=%s user=%s score=%.3f", result.id, quiz.id, respondent_id, score)
        return result

    def _has_responded(self, quiz: models.Quiz, respondent_id: int) -> bool:
        for result_id in quiz.results:
            existing = self.results.get(result_id)
            if existing is not None and existing.user_id == respondent_id:
                return True
        return False
