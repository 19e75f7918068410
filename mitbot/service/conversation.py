from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel

from mitbot.service.errors import IllegalTransitionError, QuestionnaireIncompleteError
from mitbot.service.questionnaire import Question, QuestionAnswer, Questionnaire

STATE_IDLE = "idle"
STATE_COMPLETE = "complete"

_TERMINAL_STATES = frozenset({STATE_IDLE, STATE_COMPLETE})


class Conversation(BaseModel):
    """Per-user dialog state machine.

    ``idle`` and ``complete`` are the resting states; every other state names
    the dialog leg currently in flight and owns ``questionnaire``.
    """

    id: str
    state: str = STATE_IDLE
    questionnaire: Optional[Questionnaire] = None

    @classmethod
    def new(cls, conversation_id: str) -> "Conversation":
        return cls(id=conversation_id)

    @property
    def in_flight(self) -> bool:
        return self.state not in _TERMINAL_STATES

    def start(self, state: str, questionnaire: Questionnaire) -> None:
        if state in _TERMINAL_STATES:
            raise ValueError(f"cannot start a leg in reserved state {state!r}")
        if self.state != STATE_IDLE:
            raise IllegalTransitionError(
                f"cannot start {state!r} while conversation is {self.state!r}",
                detail={"state": self.state, "requested": state},
            )
        self.state = state
        self.questionnaire = questionnaire

    def current(self) -> Question:
        self._require_in_flight("current")
        return self.questionnaire.current()

    def submit(self, answer: str) -> str:
        """Feed ``answer`` to the running leg and return the leg's state.

        The returned state is the one the leg ran under, even when this answer
        completed it and the conversation moved to ``complete``.
        """
        self._require_in_flight("submit")
        state = self.state
        if self.questionnaire.process_answer(answer):
            self.state = STATE_COMPLETE
        return state

    def results(self) -> List[QuestionAnswer]:
        """Consume the finished leg and return to idle."""
        if self.in_flight:
            raise QuestionnaireIncompleteError(detail={"state": self.state})
        if self.state != STATE_COMPLETE or self.questionnaire is None:
            raise IllegalTransitionError(
                "no completed questionnaire to collect", detail={"state": self.state}
            )
        answers = self.questionnaire.results()
        self.reset()
        return answers

    def reset(self) -> None:
        self.state = STATE_IDLE
        self.questionnaire = None

    def _require_in_flight(self, operation: str) -> None:
        if not self.in_flight or self.questionnaire is None:
            raise IllegalTransitionError(
                f"cannot {operation}: no questions in progress",
                detail={"state": self.state},
            )
