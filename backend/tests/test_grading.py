from datetime import timedelta

import pytest

from quizhub import models
from quizhub.errors import Forbidden, ValidationFailed
from quizhub.grading import DUPLICATE_MESSAGE, EXPIRED_MESSAGE, GradingService, grade_answers
from quizhub.questions import load_questions

from conftest import typed_answers

CORRECT = ({"type": "MultipleChoice", "choice": 1}, {"type": "FillIn", "answer": "Rome"})


def test_all_correct_scores_one_and_links_result(grading, make_user, make_quiz, quizzes, users):
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner)

    result = grading.submit_answers(quiz, respondent.id, typed_answers(*CORRECT))

    assert result.score == 1.0
    assert result.quiz_owner_id == owner.id
    assert result.exclusive is True
    assert quizzes.get(quiz.id).results == [result.id]
    assert users.get(respondent.id).results == [result.id]
    assert [a["is_correct"] for a in result.answers] == [True, True]


def test_partial_score_and_correct_answers_shown(grading, make_user, make_quiz):
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner)

    result = grading.submit_answers(
        quiz, respondent.id, typed_answers({"choice": 0}, {"type": "FillIn", "answer": "Rome"})
    )

    assert result.score == pytest.approx(0.5)
    assert result.answers[0] == {"type": "MultipleChoice", "choice": 0, "is_correct": False, "correct_answer": 1}
    assert result.answers[1] == {"type": "FillIn", "answer": "Rome", "is_correct": True, "correct_answer": "Rome"}


def test_hidden_correct_answers_are_not_stored(grading, make_user, make_quiz):
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner, show_correct_answers=False)

    result = grading.submit_answers(quiz, respondent.id, typed_answers(*CORRECT))

    assert all("correct_answer" not in a for a in result.answers)


def test_fill_in_grading_is_exact():
    questions = load_questions([{"type": "FillIn", "text": "Capital?", "correct_answer": "Rome"}])
    graded, score, errors = grade_answers(questions, typed_answers({"type": "FillIn", "answer": "rome"}), True)
    assert errors == []
    assert graded[0].is_correct is False
    assert score == 0.0


def test_ten_correct_answers_score_exactly_one():
    questions = load_questions(
        [{"type": "FillIn", "text": f"Q{i}", "correct_answer": str(i)} for i in range(10)]
    )
    answers = typed_answers(*[{"type": "FillIn", "answer": str(i)} for i in range(10)])
    _, score, errors = grade_answers(questions, answers, False)
    assert errors == []
    assert score == 1.0


def test_one_of_three_correct():
    questions = load_questions(
        [{"type": "FillIn", "text": f"Q{i}", "correct_answer": "yes"} for i in range(3)]
    )
    answers = typed_answers(
        {"type": "FillIn", "answer": "yes"}, {"type": "FillIn", "answer": "no"}, {"type": "FillIn", "answer": "no"}
    )
    _, score, _ = grade_answers(questions, answers, False)
    assert score == pytest.approx(1 / 3)


def test_private_quiz_is_forbidden_to_strangers(grading, make_user, make_quiz):
    owner, allowed, stranger = make_user(), make_user(), make_user()
    quiz = make_quiz(owner, is_public=False, allowed_users=[allowed.username])

    with pytest.raises(Forbidden):
        grading.submit_answers(quiz, stranger.id, typed_answers(*CORRECT))

    assert grading.submit_answers(quiz, allowed.id, typed_answers(*CORRECT)).score == 1.0
    assert grading.submit_answers(quiz, owner.id, typed_answers(*CORRECT)).score == 1.0


def test_expired_quiz_rejects_submissions(results, quizzes, users, make_user, make_quiz):
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner)
    later = GradingService(results, quizzes, users, clock=lambda: models.utcnow() + timedelta(days=2))

    with pytest.raises(ValidationFailed) as exc:
        later.submit_answers(quiz, respondent.id, typed_answers(*CORRECT))

    assert exc.value.errors[0].field == "expiration"
    assert exc.value.errors[0].message == EXPIRED_MESSAGE
    assert results.list_by_quiz(quiz.id) == []


def test_second_submission_is_a_duplicate(grading, make_user, make_quiz, results):
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner)
    grading.submit_answers(quiz, respondent.id, typed_answers(*CORRECT))

    with pytest.raises(ValidationFailed) as exc:
        grading.submit_answers(quiz, respondent.id, typed_answers(*CORRECT))

    assert exc.value.errors[0].message == DUPLICATE_MESSAGE
    assert exc.value.errors[0].field is None
    assert len(results.list_by_quiz(quiz.id)) == 1


def test_multiple_responses_when_allowed(grading, make_user, make_quiz, users):
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner, allow_multiple_responses=True)

    first = grading.submit_answers(quiz, respondent.id, typed_answers(*CORRECT))
    second = grading.submit_answers(quiz, respondent.id, typed_answers({"choice": 2}, {"type": "FillIn", "answer": "x"}))

    assert first.exclusive is False
    assert second.score == 0.0
    assert users.get(respondent.id).results == [first.id, second.id]


def test_unique_index_catches_unlinked_duplicate(grading, make_user, make_quiz, results, quizzes):
    """A result stored by a concurrent request but not yet linked to the quiz."""
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner)
    results.create(models.Result(user_id=respondent.id, quiz_id=quiz.id, quiz_owner_id=owner.id, score=0.0))
    assert quizzes.get(quiz.id).results == []

    with pytest.raises(ValidationFailed) as exc:
        grading.submit_answers(quizzes.get(quiz.id), respondent.id, typed_answers(*CORRECT))

    assert exc.value.errors[0].message == DUPLICATE_MESSAGE
    assert len(results.list_by_quiz(quiz.id)) == 1


def test_answer_count_must_match(grading, make_user, make_quiz):
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner)

    with pytest.raises(ValidationFailed) as exc:
        grading.submit_answers(quiz, respondent.id, typed_answers({"choice": 1}))

    error = exc.value.errors[0]
    assert error.field == "answers"
    assert error.value == 1
    assert error.expected == 2


def test_every_bad_answer_is_reported(grading, make_user, make_quiz, results):
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner)

    with pytest.raises(ValidationFailed) as exc:
        grading.submit_answers(quiz, respondent.id, typed_answers({"type": "FillIn", "answer": "x"}, {"choice": 0}))

    errors = exc.value.errors
    assert [e.index for e in errors] == [0, 1]
    assert errors[0].value == "FillIn"
    assert errors[0].expected == "MultipleChoice"
    assert errors[1].expected == "FillIn"
    assert results.list_by_quiz(quiz.id) == []


def test_choice_out_of_range(grading, make_user, make_quiz):
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner)

    with pytest.raises(ValidationFailed) as exc:
        grading.submit_answers(quiz, respondent.id, typed_answers({"choice": 3}, {"type": "FillIn", "answer": "Rome"}))

    assert exc.value.errors[0].index == 0
    assert exc.value.errors[0].message == "Answer choice must be between 0 and 2"


def test_empty_quiz_scores_zero():
    graded, score, errors = grade_answers([], [], True)
    assert (graded, score, errors) == ([], 0.0, [])


def test_shape_and_type_errors_are_reported_together(grading, make_user, make_quiz):
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner)

    with pytest.raises(ValidationFailed) as exc:
        grading.submit_answers(
            quiz, respondent.id, typed_answers({"type": "FillIn", "answer": "x"}, {"type": "FillIn", "answer": ""})
        )

    errors = exc.value.errors
    assert [e.index for e in errors] == [0, 1]
    assert errors[0].expected == "MultipleChoice"
    assert errors[1].message == "Answer text must not be empty"


def test_negative_choice_is_a_per_answer_error(grading, make_user, make_quiz):
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner)

    with pytest.raises(ValidationFailed) as exc:
        grading.submit_answers(quiz, respondent.id, typed_answers({"choice": -1}, {"type": "FillIn", "answer": "Rome"}))

    assert [(e.index, e.message) for e in exc.value.errors] == [(0, "Answer choice must not be negative")]


def test_expiration_is_checked_before_answers(results, quizzes, users, make_user, make_quiz):
    owner, respondent = make_user(), make_user()
    quiz = make_quiz(owner)
    later = GradingService(results, quizzes, users, clock=lambda: models.utcnow() + timedelta(days=2))

    with pytest.raises(ValidationFailed) as exc:
        later.submit_answers(quiz, respondent.id, typed_answers({"choice": -1}, {"type": "FillIn", "answer": ""}))

    assert [e.field for e in exc.value.errors] == ["expiration"]
