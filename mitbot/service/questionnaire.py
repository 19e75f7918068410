from __future__ import annotations

from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from mitbot.service.errors import (
    InvalidAnswerError,
    NoMoreQuestionsError,
    QuestionnaireIncompleteError,
)
from mitbot.service.tokens import TokenField


class Question(BaseModel):
    text: str
    answers: List[str] = Field(default_factory=list)
    field: Optional[TokenField] = None


class QuestionAnswer(BaseModel):
    question: Question
    answer: str = ""

    @property
    def field(self) -> Optional[TokenField]:
        return self.question.field


class Questionnaire(BaseModel):
    """Ordered question/answer pairs with a cursor at the first unanswered one."""

    qa_pairs: List[QuestionAnswer] = Field(default_factory=list)
    position: int = 0

    @classmethod
    def new(cls, questions: Sequence[Question]) -> "Questionnaire":
        return cls(qa_pairs=[QuestionAnswer(question=q) for q in questions])

    @property
    def is_complete(self) -> bool:
        return self.position >= len(self.qa_pairs)

    def current(self) -> Question:
        if self.is_complete:
            raise NoMoreQuestionsError()
        return self.qa_pairs[self.position].question

    def process_answer(self, answer: str) -> bool:
        """Record ``answer`` for the current question and advance the cursor.

        The answer must equal one of the question's choices exactly. Returns
        True once the last question has been answered.
        """
        question = self.current()
        if answer not in question.answers:
            raise InvalidAnswerError(
                "invalid answer",
                detail={"answer": answer, "choices": list(question.answers)},
            )
        self.qa_pairs[self.position].answer = answer
        self.position += 1
        return self.is_complete

    def results(self) -> List[QuestionAnswer]:
        if not self.is_complete:
            raise QuestionnaireIncompleteError()
        return list(self.qa_pairs)
