from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, TypeVar

from mitbot.logging import get_logger
from mitbot.service.conversation import Conversation
from mitbot.service.errors import (
    CollaboratorError,
    InvalidAnswerError,
    PartialFailureError,
    ProtocolViolationError,
    QuestionnaireIncompleteError,
    TokenNotFoundError,
    UnsupportedStateError,
)
from mitbot.service.provider import ProviderError
from mitbot.service.questionnaire import Question, QuestionAnswer, Questionnaire
from mitbot.service.tokens import (
    EXPIRATION_CHOICES,
    TOKEN_TYPE_LABELS,
    APIToken,
    KeyInfo,
    TokenField,
    TokenType,
    filter_keys_by_type,
    key_button_text,
    parse_expiration,
    parse_token_type,
    resolve_key_id_from_prefix,
)
from mitbot.storage.common import utcnow
from mitbot.storage.errors import StorageError

T = TypeVar("T")

LIST_KEY_DISPLAY_LEN = 12
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

TOKEN_CREATED_MESSAGE = (
    "🔑 Your New API Token\n\n{token}\n\n⏱ Valid until: {expires_at}\n\n"
    "Keep this token secure and don't share it with others."
)
TOKEN_REVOKED_MESSAGE = (
    "🔒 Your API token has been successfully revoked.\n\n"
    "You can create a new one at any time."
)
NO_CHANGES_MESSAGE = "No changes made. You can continue using your existing API tokens."
INVALID_TOKEN_TYPE_MESSAGE = "Invalid token type selected. Please choose Web or TCP."
INVALID_EXPIRATION_MESSAGE = (
    "Invalid expiration period selected. Please select one of the available options."
)
INVALID_ANSWER_MESSAGE = "Please choose one of the offered options.\n\n{question}"
RESET_MESSAGE = "Conversation has been reset. You can start over by creating a new token."


class TokenFlow(str, Enum):
    """Named dialog legs driven by the workflow."""

    SELECT_TOKEN_TYPE = "selectTokenType"
    TOKEN_EXISTS = "tokenExists"
    NEW_TOKEN = "newToken"
    TOKEN_REGENERATE = "tokenRegenerate"
    SELECT_TOKEN_TO_REGENERATE = "selectTokenToRegenerate"
    SELECT_TOKEN_TO_REVOKE = "selectTokenToRevoke"


@dataclass
class Response:
    """What the user sees next; no ``answers`` means no follow-up choice."""

    message: str
    answers: List[str] = field(default_factory=list)


class TokenStore(Protocol):
    async def get_conversation(self, conversation_id: str) -> Conversation: ...

    async def save_conversation(self, conversation: Conversation) -> None: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...

    async def get_api_keys(self, user_id: str) -> List[str]: ...

    async def get_api_keys_with_expiration(self, user_id: str) -> List[KeyInfo]: ...

    async def add_api_key(
        self, user_id: str, key_id: str, token_type: TokenType, ttl: int
    ) -> None: ...

    async def revoke_token(self, user_id: str, key_id: str) -> None: ...


class TokenProvider(Protocol):
    async def generate_token(self, key_id: str, token_type: TokenType, ttl: int) -> APIToken: ...

    async def revoke_token(self, key_id: str) -> None: ...


Handler = Callable[[Conversation, str, List[QuestionAnswer]], Awaitable[Response]]


class TokenWorkflow:
    """Maps a user's conversation state and answers onto token lifecycle actions.

    Every public call loads the user's conversation from the store, mutates it
    and persists it again; nothing is cached between calls. When a dialog leg
    completes, the handler registered for the leg's state runs with the
    collected answers and either finishes the action or starts the next leg.
    """

    def __init__(
        self,
        store: TokenStore,
        provider: TokenProvider,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.provider = provider
        self.logger = get_logger(__name__)
        self._clock = clock
        self._handlers: Dict[str, Handler] = self._builtin_handlers()

    def _builtin_handlers(self) -> Dict[str, Handler]:
        return {
            TokenFlow.SELECT_TOKEN_TYPE.value: self._handle_select_token_type,
            TokenFlow.TOKEN_EXISTS.value: self._handle_token_exists,
            TokenFlow.SELECT_TOKEN_TO_REGENERATE.value: self._handle_select_token_to_regenerate,
            TokenFlow.NEW_TOKEN.value: self._handle_new_token,
            TokenFlow.TOKEN_REGENERATE.value: self._handle_token_regenerate,
            TokenFlow.SELECT_TOKEN_TO_REVOKE.value: self._handle_select_token_to_revoke,
        }

    def register_handler(self, state: str, handler: Handler) -> None:
        """Attach ``handler`` to the leg named ``state``, replacing any existing one."""
        if isinstance(state, Enum):
            state = state.value
        self._handlers[state] = handler

    @property
    def states(self) -> List[str]:
        return sorted(self._handlers)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_message(self, user_id: str, text: str) -> Response:
        """Feed one user message into the running dialog leg."""
        conversation = await self._call("get conversation", self.store.get_conversation(user_id))

        try:
            state = conversation.submit(text)
        except InvalidAnswerError:
            # Nothing changed, so nothing is persisted.
            question = conversation.current()
            self.logger.info("answer_rejected", user_id=user_id, state=conversation.state)
            return Response(
                message=INVALID_ANSWER_MESSAGE.format(question=question.text),
                answers=list(question.answers),
            )

        try:
            answers = conversation.results()
        except QuestionnaireIncompleteError:
            question = conversation.current()
            await self._save(conversation)
            return Response(message=question.text, answers=list(question.answers))

        await self._save(conversation)

        handler = self._handlers.get(state)
        if handler is None:
            self.logger.error("unsupported_conversation_state", user_id=user_id, state=state)
            raise UnsupportedStateError(
                f"unsupported conversation state: {state}", detail={"state": state}
            )
        self.logger.info("dialog_leg_completed", user_id=user_id, state=state)
        return await handler(conversation, user_id, answers)

    async def create_token(self, user_id: str) -> Response:
        conversation = await self._call("get conversation", self.store.get_conversation(user_id))
        question = Question(
            text="What type of token do you want to create?",
            answers=[TOKEN_TYPE_LABELS[t] for t in TokenType],
        )
        return await self._start_leg(conversation, TokenFlow.SELECT_TOKEN_TYPE, [question])

    async def revoke_token(self, user_id: str) -> Optional[Response]:
        """Revoke the user's only key directly, or ask which one to revoke.

        Returns None when a single key was revoked without further dialog.
        """
        key_ids = await self._call("get API keys", self.store.get_api_keys(user_id))
        if not key_ids:
            raise TokenNotFoundError()
        if len(key_ids) == 1:
            await self._revoke_key(user_id, key_ids[0])
            return None

        keys = await self._call(
            "get API keys", self.store.get_api_keys_with_expiration(user_id)
        )
        conversation = await self._call("get conversation", self.store.get_conversation(user_id))
        question = self._selection_question(keys, "Which token do you want to revoke?")
        return await self._start_leg(conversation, TokenFlow.SELECT_TOKEN_TO_REVOKE, [question])

    async def list_tokens(self, user_id: str) -> Response:
        keys = await self._call(
            "get API keys", self.store.get_api_keys_with_expiration(user_id)
        )
        if not keys:
            raise TokenNotFoundError()

        lines = ["🔑 Your Active API Tokens"]
        for token_type in TokenType:
            typed = filter_keys_by_type(keys, token_type)
            lines.append("")
            lines.append(f"{token_type.label} tokens ({len(typed)}/{token_type.quota})")
            for index, key in enumerate(typed, start=1):
                lines.append(f"{index}. {key.key_id[:LIST_KEY_DISPLAY_LEN]}...")
                lines.append(f"   ⏱ Expires: {key.expires_at.strftime(DATETIME_FORMAT)}")
        lines.append("")
        lines.append("You can create a new token or revoke an existing one at any time.")
        return Response(message="\n".join(lines))

    async def reset_conversation(self, user_id: str) -> Response:
        """Drop whatever dialog is stored for the user, readable or not."""
        await self._call("delete conversation", self.store.delete_conversation(user_id))
        self.logger.info("conversation_reset", user_id=user_id)
        return Response(message=RESET_MESSAGE)

    # ------------------------------------------------------------------
    # Leg handlers
    # ------------------------------------------------------------------

    async def _handle_select_token_type(
        self, conversation: Conversation, user_id: str, answers: List[QuestionAnswer]
    ) -> Response:
        answer = self._single_answer(answers, "token type")
        token_type = parse_token_type(answer.answer)
        if token_type is None:
            return Response(message=INVALID_TOKEN_TYPE_MESSAGE)

        keys = await self._keys_of_type(user_id, token_type)
        if len(keys) >= token_type.quota:
            self.logger.info(
                "token_quota_reached",
                user_id=user_id,
                token_type=token_type.value,
                count=len(keys),
            )
            return await self._ask_to_regenerate(conversation, token_type)
        return await self._ask_for_expiration(conversation, TokenFlow.NEW_TOKEN, token_type)

    async def _handle_token_exists(
        self, conversation: Conversation, user_id: str, answers: List[QuestionAnswer]
    ) -> Response:
        answer = self._single_answer(answers, "regenerate confirmation")
        if answer.answer == "No":
            return Response(message=NO_CHANGES_MESSAGE)

        token_type = self._answer_field(answer).token_type
        keys = await self._keys_of_type(user_id, token_type)
        if not keys:
            raise TokenNotFoundError(detail={"token_type": token_type.value})
        if len(keys) == 1:
            return await self._ask_for_expiration(
                conversation, TokenFlow.TOKEN_REGENERATE, token_type, keys[0].key_id
            )

        question = self._selection_question(keys, "Which token do you want to regenerate?")
        question.field = TokenField(token_type=token_type)
        return await self._start_leg(conversation, TokenFlow.SELECT_TOKEN_TO_REGENERATE, [question])

    async def _handle_select_token_to_regenerate(
        self, conversation: Conversation, user_id: str, answers: List[QuestionAnswer]
    ) -> Response:
        answer = self._single_answer(answers, "token selection")
        token_type = self._answer_field(answer).token_type
        keys = await self._keys_of_type(user_id, token_type)
        key_id = resolve_key_id_from_prefix([k.key_id for k in keys], answer.answer)
        return await self._ask_for_expiration(
            conversation, TokenFlow.TOKEN_REGENERATE, token_type, key_id
        )

    async def _handle_new_token(
        self, conversation: Conversation, user_id: str, answers: List[QuestionAnswer]
    ) -> Response:
        answer = self._single_answer(answers, "expiration")
        ttl = parse_expiration(answer.answer)
        if ttl is None:
            return Response(message=INVALID_EXPIRATION_MESSAGE)

        token_type = self._answer_field(answer).token_type
        issued = await self._call(
            "generate token", self.provider.generate_token("", token_type, ttl)
        )
        await self._call(
            "add API key",
            self.store.add_api_key(user_id, issued.key_id, token_type, issued.ttl),
        )
        self.logger.info(
            "token_created",
            user_id=user_id,
            key_id=issued.key_id,
            token_type=token_type.value,
            ttl=issued.ttl,
        )
        return self._token_issued(issued)

    async def _handle_token_regenerate(
        self, conversation: Conversation, user_id: str, answers: List[QuestionAnswer]
    ) -> Response:
        answer = self._single_answer(answers, "expiration")
        ttl = parse_expiration(answer.answer)
        if ttl is None:
            return Response(message=INVALID_EXPIRATION_MESSAGE)

        token_field = self._answer_field(answer)
        if not token_field.key_id:
            raise ProtocolViolationError(
                "missing key ID in regenerate answer field",
                detail={"field": token_field.encode()},
            )
        token_type, key_id = token_field.token_type, token_field.key_id

        await self._revoke_key(user_id, key_id, step="revoke existing token")
        issued = await self._call(
            "generate token", self.provider.generate_token(key_id, token_type, ttl)
        )
        await self._call(
            "add API key",
            self.store.add_api_key(user_id, issued.key_id, token_type, issued.ttl),
        )
        self.logger.info(
            "token_regenerated",
            user_id=user_id,
            key_id=issued.key_id,
            token_type=token_type.value,
            ttl=issued.ttl,
        )
        return self._token_issued(issued)

    async def _handle_select_token_to_revoke(
        self, conversation: Conversation, user_id: str, answers: List[QuestionAnswer]
    ) -> Response:
        answer = self._single_answer(answers, "token selection")
        key_ids = await self._call("get API keys", self.store.get_api_keys(user_id))
        key_id = resolve_key_id_from_prefix(key_ids, answer.answer)
        await self._revoke_key(user_id, key_id)
        return Response(message=TOKEN_REVOKED_MESSAGE)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _ask_to_regenerate(
        self, conversation: Conversation, token_type: TokenType
    ) -> Response:
        limit = token_type.quota
        if token_type == TokenType.TCP:
            text = f"You've reached the maximum of {limit} TCP token. Do you want to regenerate it?"
        else:
            text = (
                f"You've reached the maximum of {limit} web tokens. "
                "Do you want to regenerate an existing one?"
            )
        question = Question(
            text=text, answers=["Yes", "No"], field=TokenField(token_type=token_type)
        )
        return await self._start_leg(conversation, TokenFlow.TOKEN_EXISTS, [question])

    async def _ask_for_expiration(
        self,
        conversation: Conversation,
        flow: TokenFlow,
        token_type: TokenType,
        key_id: str = "",
    ) -> Response:
        question = Question(
            text="What is the expiration period for your new API token?",
            answers=list(EXPIRATION_CHOICES),
            field=TokenField(token_type=token_type, key_id=key_id),
        )
        return await self._start_leg(conversation, flow, [question])

    async def _start_leg(
        self, conversation: Conversation, flow: TokenFlow, questions: Sequence[Question]
    ) -> Response:
        conversation.start(flow.value, Questionnaire.new(questions))
        question = conversation.current()
        await self._save(conversation)
        return Response(message=question.text, answers=list(question.answers))

    async def _revoke_key(
        self, user_id: str, key_id: str, *, step: str = "revoke token"
    ) -> None:
        """Revoke at the provider first, then forget the key locally."""
        await self._call(step, self.provider.revoke_token(key_id))
        try:
            await self.store.revoke_token(user_id, key_id)
        except StorageError as exc:
            self.logger.error(
                "token_revoke_partial_failure",
                user_id=user_id,
                key_id=key_id,
                error=str(exc),
            )
            raise PartialFailureError("remove API key from repository", exc) from exc
        self.logger.info("token_revoked", user_id=user_id, key_id=key_id)

    async def _keys_of_type(self, user_id: str, token_type: TokenType) -> List[KeyInfo]:
        keys = await self._call(
            "get API keys", self.store.get_api_keys_with_expiration(user_id)
        )
        return filter_keys_by_type(keys, token_type)

    async def _save(self, conversation: Conversation) -> None:
        await self._call("save conversation", self.store.save_conversation(conversation))

    async def _call(self, step: str, pending: Awaitable[T]) -> T:
        try:
            return await pending
        except (StorageError, ProviderError) as exc:
            self.logger.warning("collaborator_failed", step=step, error=str(exc))
            raise CollaboratorError(step, exc) from exc

    def _token_issued(self, issued: APIToken) -> Response:
        expires_at = self._clock() + timedelta(seconds=issued.ttl)
        return Response(
            message=TOKEN_CREATED_MESSAGE.format(
                token=issued.token, expires_at=expires_at.strftime(DATETIME_FORMAT)
            )
        )

    @staticmethod
    def _selection_question(keys: Sequence[KeyInfo], text: str) -> Question:
        return Question(text=text, answers=[key_button_text(k) for k in keys])

    @staticmethod
    def _single_answer(answers: Sequence[QuestionAnswer], what: str) -> QuestionAnswer:
        if len(answers) != 1:
            raise ProtocolViolationError(
                f"expected exactly one answer for {what} question, got {len(answers)}",
                detail={"answers": len(answers)},
            )
        return answers[0]

    @staticmethod
    def _answer_field(answer: QuestionAnswer) -> TokenField:
        # A question without context predates typed tokens and means web.
        return answer.field or TokenField()
