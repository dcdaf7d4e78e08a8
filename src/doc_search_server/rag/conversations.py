"""Chat turns: search the user's documents and answer from the results."""

import time
from uuid import UUID

from pydantic import BaseModel

from ..logger import logger
from .answers import AnswerSynthesizer, SearchAnswer
from .models import Conversation, Message, MessageRole
from .search import SearchEngine, SearchOptions, SearchResponse

MAX_MESSAGE_LENGTH = 2000
TITLE_PREFIX_LENGTH = 50


class InvalidMessageError(ValueError):
    pass


class ConversationNotFoundError(LookupError):
    pass


class ChatTurn(BaseModel):
    conversation_id: UUID
    message: Message
    answer: SearchAnswer
    search: SearchResponse


def conversation_title(message: str) -> str:
    return message[:TITLE_PREFIX_LENGTH] + "..."


class ChatService:
    def __init__(self, store, search_engine: SearchEngine, synthesizer: AnswerSynthesizer):
        self.store = store
        self.search_engine = search_engine
        self.synthesizer = synthesizer

    def ask(
        self,
        message: str,
        user_id: UUID,
        conversation_id: UUID | None = None,
        options: SearchOptions | None = None,
    ) -> ChatTurn:
        """Answer a chat message from the user's documents.

        The conversation is created on the first turn. Both the user's
        message and the assistant's reply are saved; the reply's metadata
        carries the structured answer and the search query id.

        Raises:
            InvalidMessageError: If the message is empty or too long.
            ConversationNotFoundError: If conversation_id does not belong to the user.
        """
        message = (message or "").strip()
        if not 1 <= len(message) <= MAX_MESSAGE_LENGTH:
            raise InvalidMessageError(
                f"Message must be between 1 and {MAX_MESSAGE_LENGTH} characters"
            )
        start = time.perf_counter()

        if conversation_id is None:
            conversation = self.store.create_conversation(user_id, conversation_title(message))
            conversation_id = conversation.id
        else:
            conversation = self.store.get_conversation(conversation_id)
            if conversation is None or conversation.user_id != user_id:
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")

        self.store.insert_message(conversation_id, MessageRole.USER, message)

        search = self.search_engine.search(message, user_id, options)
        answer = self.synthesizer.answer(message, search.results)

        reply = self.store.insert_message(
            conversation_id,
            MessageRole.ASSISTANT,
            answer.answer,
            metadata={
                "answer_data": answer.model_dump(),
                "search_query_id": str(search.query_id),
            },
        )

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "chat turn completed",
            conversation_id=str(conversation_id),
            results_count=search.total_results,
            duration_ms=round(duration_ms, 2),
        )
        return ChatTurn(
            conversation_id=conversation_id, message=reply, answer=answer, search=search
        )

    def list_conversations(self, user_id: UUID) -> list[Conversation]:
        return self.store.list_conversations(user_id)
