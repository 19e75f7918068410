import pytest

from mitbot.service.conversation import STATE_COMPLETE, STATE_IDLE, Conversation
from mitbot.service.errors import (
    IllegalTransitionError,
    InvalidAnswerError,
    QuestionnaireIncompleteError,
)
from mitbot.service.questionnaire import Question, Questionnaire


def _leg(*texts):
    return Questionnaire.new([Question(text=t, answers=["Yes", "No"]) for t in texts])


def test_new_conversation_is_idle_without_questionnaire():
    conversation = Conversation.new("user-1")

    assert conversation.id == "user-1"
    assert conversation.state == STATE_IDLE
    assert conversation.questionnaire is None
    assert not conversation.in_flight


def test_start_is_only_legal_from_idle():
    conversation = Conversation.new("user-1")
    conversation.start("confirm", _leg("Sure?"))

    assert conversation.state == "confirm"
    with pytest.raises(IllegalTransitionError):
        conversation.start("other", _leg("Again?"))


@pytest.mark.parametrize("reserved", [STATE_IDLE, STATE_COMPLETE])
def test_start_rejects_reserved_states(reserved):
    conversation = Conversation.new("user-1")

    with pytest.raises(ValueError):
        conversation.start(reserved, _leg("Sure?"))
    assert conversation.state == STATE_IDLE


def test_current_and_submit_require_a_leg_in_flight():
    conversation = Conversation.new("user-1")

    with pytest.raises(IllegalTransitionError):
        conversation.current()
    with pytest.raises(IllegalTransitionError):
        conversation.submit("Yes")


def test_submit_returns_leg_state_and_completes_on_last_answer():
    conversation = Conversation.new("user-1")
    conversation.start("confirm", _leg("First?", "Second?"))

    assert conversation.submit("Yes") == "confirm"
    assert conversation.state == "confirm"
    assert conversation.current().text == "Second?"

    assert conversation.submit("No") == "confirm"
    assert conversation.state == STATE_COMPLETE


def test_submit_propagates_invalid_answer_without_changing_state():
    conversation = Conversation.new("user-1")
    conversation.start("confirm", _leg("Sure?"))

    with pytest.raises(InvalidAnswerError):
        conversation.submit("Maybe")
    assert conversation.state == "confirm"
    assert conversation.questionnaire.position == 0


def test_results_from_in_flight_leg_is_incomplete():
    conversation = Conversation.new("user-1")
    conversation.start("confirm", _leg("First?", "Second?"))
    conversation.submit("Yes")

    with pytest.raises(QuestionnaireIncompleteError):
        conversation.results()
    assert conversation.state == "confirm"


def test_results_from_idle_is_illegal():
    with pytest.raises(IllegalTransitionError):
        Conversation.new("user-1").results()


def test_results_are_consumed_once_and_reset_to_idle():
    conversation = Conversation.new("user-1")
    conversation.start("confirm", _leg("Sure?"))
    conversation.submit("No")

    answers = conversation.results()

    assert [a.answer for a in answers] == ["No"]
    assert conversation.state == STATE_IDLE
    assert conversation.questionnaire is None
    with pytest.raises(IllegalTransitionError):
        conversation.results()


def test_reset_drops_running_leg():
    conversation = Conversation.new("user-1")
    conversation.start("confirm", _leg("Sure?"))

    conversation.reset()

    assert conversation.state == STATE_IDLE
    assert conversation.questionnaire is None
    conversation.start("confirm", _leg("Sure?"))


def test_conversation_json_round_trip_keeps_position():
    conversation = Conversation.new("user-1")
    conversation.start("confirm", _leg("First?", "Second?"))
    conversation.submit("Yes")

    restored = Conversation.model_validate_json(conversation.model_dump_json())

    assert restored == conversation
    assert restored.current().text == "Second?"
