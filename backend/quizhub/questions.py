"""Question and answer types.

Questions, answers and graded answers are tagged unions keyed on `type`
(`MultipleChoice` or `FillIn`). A missing or empty tag means
`MultipleChoice`; the union discriminator and the multiple-choice models
apply that default while raw data (request bodies or stored JSON) is turned
into typed values, so the rest of the code only ever sees concrete classes.

The models are deliberately lenient about emptiness and ranges. Those rules
live in `validate_question` and `validate_answer_shape` so that callers can
report them per item instead of failing the whole payload at parse time.
"""

from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Discriminator, Tag, TypeAdapter, field_validator

MULTIPLE_CHOICE = "MultipleChoice"
FILL_IN = "FillIn"

MIN_ANSWER_COUNT = 2


class QuestionError(ValueError):
    """Raised when a question breaks one of the authoring rules."""


class AnswerError(ValueError):
    """Raised when a submitted answer is malformed."""


def question_kind(value: Any) -> str:
    """Return the effective `type` tag of raw or typed question/answer data."""
    if isinstance(value, dict):
        kind = value.get("type")
    else:
        kind = getattr(value, "type", None)
    return kind or MULTIPLE_CHOICE


class _MultipleChoiceTagged(BaseModel):
    type: Literal["MultipleChoice"] = MULTIPLE_CHOICE

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, value):
        return value or MULTIPLE_CHOICE


class Choice(BaseModel):
    """One selectable option of a multiple-choice question."""
    text: str = ""


class MultipleChoiceQuestion(_MultipleChoiceTagged):
    text: str = ""
    correct_answer: Optional[int] = None
    answers: List[Choice] = []


class FillInQuestion(BaseModel):
    type: Literal["FillIn"] = FILL_IN
    text: str = ""
    correct_answer: Optional[str] = None


Question = Annotated[
    Union[
        Annotated[MultipleChoiceQuestion, Tag(MULTIPLE_CHOICE)],
        Annotated[FillInQuestion, Tag(FILL_IN)],
    ],
    Discriminator(question_kind),
]


class MultipleChoiceAnswer(_MultipleChoiceTagged):
    choice: Optional[int] = None


class FillInAnswer(BaseModel):
    type: Literal["FillIn"] = FILL_IN
    answer: Optional[str] = None


Answer = Annotated[
    Union[
        Annotated[MultipleChoiceAnswer, Tag(MULTIPLE_CHOICE)],
        Annotated[FillInAnswer, Tag(FILL_IN)],
    ],
    Discriminator(question_kind),
]


class MultipleChoiceGradedAnswer(_MultipleChoiceTagged):
    choice: int
    is_correct: bool
    # only present when the quiz shows correct answers
    correct_answer: Optional[int] = None


class FillInGradedAnswer(BaseModel):
    type: Literal["FillIn"] = FILL_IN
    answer: str
    is_correct: bool
    correct_answer: Optional[str] = None


GradedAnswer = Annotated[
    Union[
        Annotated[MultipleChoiceGradedAnswer, Tag(MULTIPLE_CHOICE)],
        Annotated[FillInGradedAnswer, Tag(FILL_IN)],
    ],
    Discriminator(question_kind),
]

_questions = TypeAdapter(List[Question])


def validate_question(question) -> bool:
    """Check the authoring rules for a single question.

    Returns True for a valid question and raises `QuestionError` naming the
    first broken rule otherwise.
    """
    if not question.text:
        raise QuestionError("Question has empty question text")
    if isinstance(question, MultipleChoiceQuestion):
        if len(question.answers) < MIN_ANSWER_COUNT:
            raise QuestionError(f"Question has too few answers. Expected at least {MIN_ANSWER_COUNT}")
        if not all(choice.text for choice in question.answers):
            raise QuestionError("Question has empty answer text")
        if question.correct_answer is None or not 0 <= question.correct_answer < len(question.answers):
            raise QuestionError("Question has an answer index that is out of range")
        return True
    if isinstance(question, FillInQuestion):
        if not question.correct_answer:
            raise QuestionError("Question has empty fill-in answer")
        return True
    raise TypeError(f"unsupported question: {type(question).__name__}")


def validate_answer_shape(answer) -> bool:
    """Check that a submitted answer carries a usable value for its type."""
    if isinstance(answer, MultipleChoiceAnswer):
        if answer.choice is None:
            raise AnswerError("Answer choice is required")
        if answer.choice < 0:
            raise AnswerError("Answer choice must not be negative")
        return True
    if isinstance(answer, FillInAnswer):
        if not answer.answer:
            raise AnswerError("Answer text must not be empty")
        return True
    raise TypeError(f"unsupported answer: {type(answer).__name__}")


def load_questions(raw) -> list:
    """Parse stored or submitted question data into typed questions."""
    return _questions.validate_python(raw or [])


def dump_questions(questions) -> List[dict]:
    return [q.model_dump() for q in questions]


def dump_graded_answers(answers) -> List[dict]:
    return [a.model_dump(exclude_none=True) for a in answers]


def strip_correct_answer(question) -> dict:
    """Return the answer-form view of a question (no correct answer)."""
    return question.model_dump(exclude={"correct_answer"})
