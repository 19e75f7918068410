import pytest

from mitbot.service.errors import (
    InvalidAnswerError,
    NoMoreQuestionsError,
    QuestionnaireIncompleteError,
)
from mitbot.service.questionnaire import Question, Questionnaire
from mitbot.service.tokens import TokenField, TokenType


def _two_questions():
    return Questionnaire.new(
        [
            Question(text="Type?", answers=["Web", "TCP"]),
            Question(text="Expiry?", answers=["1 day", "7 days"], field=TokenField(token_type=TokenType.TCP)),
        ]
    )


def test_new_questionnaire_starts_at_first_question():
    questionnaire = _two_questions()

    assert questionnaire.position == 0
    assert not questionnaire.is_complete
    assert questionnaire.current().text == "Type?"
    assert all(pair.answer == "" for pair in questionnaire.qa_pairs)


def test_cursor_advances_one_question_per_valid_answer():
    questionnaire = _two_questions()

    assert questionnaire.process_answer("TCP") is False
    assert questionnaire.position == 1
    assert questionnaire.qa_pairs[0].answer == "TCP"
    assert questionnaire.current().text == "Expiry?"

    assert questionnaire.process_answer("7 days") is True
    assert questionnaire.is_complete
    for pair in questionnaire.qa_pairs[: questionnaire.position]:
        assert pair.answer


def test_invalid_answer_leaves_cursor_unchanged():
    questionnaire = _two_questions()

    with pytest.raises(InvalidAnswerError) as exc_info:
        questionnaire.process_answer("web")

    assert questionnaire.position == 0
    assert questionnaire.qa_pairs[0].answer == ""
    assert exc_info.value.detail == {"answer": "web", "choices": ["Web", "TCP"]}


def test_current_and_process_answer_fail_after_last_question():
    questionnaire = Questionnaire.new([Question(text="Only?", answers=["Yes"])])
    questionnaire.process_answer("Yes")

    with pytest.raises(NoMoreQuestionsError):
        questionnaire.current()
    with pytest.raises(NoMoreQuestionsError):
        questionnaire.process_answer("Yes")


def test_results_require_every_answer():
    questionnaire = _two_questions()
    questionnaire.process_answer("Web")

    with pytest.raises(QuestionnaireIncompleteError):
        questionnaire.results()

    questionnaire.process_answer("1 day")
    results = questionnaire.results()

    assert [r.answer for r in results] == ["Web", "1 day"]
    assert results[0].field is None
    assert results[1].field == TokenField(token_type=TokenType.TCP)


def test_empty_questionnaire_is_complete_immediately():
    questionnaire = Questionnaire.new([])

    assert questionnaire.is_complete
    assert questionnaire.results() == []
    with pytest.raises(NoMoreQuestionsError):
        questionnaire.current()


def test_questionnaire_survives_json_round_trip():
    questionnaire = _two_questions()
    questionnaire.process_answer("Web")

    restored = Questionnaire.model_validate_json(questionnaire.model_dump_json())

    assert restored == questionnaire
    assert restored.current().field.token_type is TokenType.TCP
