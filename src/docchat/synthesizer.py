"""
Grounded answer synthesis over the retrieved chunks.

Both ``stream`` and ``answer`` run the same prompt through the same chain, so
the streamed fragments concatenate to the single-shot answer.
"""
from __future__ import annotations

from typing import Any, AsyncIterator, Sequence

from langchain_core.documents import Document
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

from .errors import UpstreamModelError
from .history import ConversationTurn, to_messages
from .observability import get_logger

logger = get_logger(__name__)

NO_CONTEXT_ANSWER = (
    "I could not find any relevant context in this document for your question, "
    "so I don't know the answer."
)

ANSWER_SYSTEM_TEMPLATE = """You are a helpful AI assistant. Use the following pieces of context to answer the question at the end.
If you don't know the answer, just say you don't know. DO NOT try to make up an answer.
If the question is not related to the context, politely respond that you are tuned to only answer questions that are related to the context.

<context>
{context}
</context>

Please return your answer in markdown with clear headings and lists."""

ANSWER_PROMPT = ChatPromptTemplate.from_messages(
    [
        ("system", ANSWER_SYSTEM_TEMPLATE),
        MessagesPlaceholder("chat_history"),
        ("user", "{input}"),
    ]
)


def format_context(documents: Sequence[Document]) -> str:
    return "\n\n".join(str(getattr(doc, "page_content", "")) for doc in documents)


class AnswerSynthesizer:
    def __init__(self, llm: Any, prompt: ChatPromptTemplate = ANSWER_PROMPT):
        self.llm = llm
        self.prompt = prompt
        self.chain = prompt | llm | StrOutputParser()

    def _payload(self, documents, history, question) -> dict[str, Any]:
        return {
            "context": format_context(documents),
            "chat_history": to_messages(history),
            "input": question,
        }

    async def answer(
        self,
        documents: Sequence[Document],
        history: Sequence[ConversationTurn],
        question: str,
    ) -> str:
        """Single-shot synthesis with the streaming prompt."""
        if not documents:
            return NO_CONTEXT_ANSWER
        try:
            return await self.chain.ainvoke(self._payload(documents, history, question))
        except Exception as exc:
            raise UpstreamModelError(f"Answer synthesis failed: {exc}") from exc

    async def stream(
        self,
        documents: Sequence[Document],
        history: Sequence[ConversationTurn],
        question: str,
    ) -> AsyncIterator[str]:
        """Yields answer fragments in generation order.

        Errors before the first fragment mean the call was never established;
        later errors mean the answer was cut off. Both surface as
        UpstreamModelError.
        """
        if not documents:
            logger.info("synthesis_no_context")
            yield NO_CONTEXT_ANSWER
            return

        emitted = 0
        try:
            async for fragment in self.chain.astream(self._payload(documents, history, question)):
                if not fragment:
                    continue
                emitted += 1
                yield fragment
        except Exception as exc:
            if emitted:
                logger.error("synthesis_interrupted", fragments=emitted, error=str(exc))
                raise UpstreamModelError(f"Answer stream was interrupted: {exc}") from exc
            logger.error("synthesis_unavailable", error=str(exc))
            raise UpstreamModelError(f"Answer synthesis could not be started: {exc}") from exc
        logger.info("synthesis_complete", fragments=emitted, chunks=len(documents))
