"""
History-aware query rewriting.

Turns the newest question into a standalone vector-store query using the prior
conversation. Without prior history there is nothing to resolve, so the
question itself is the query and no model call is made.
"""
from __future__ import annotations

import re
from typing import Any, Sequence

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

from .errors import UpstreamModelError, ValidationError
from .history import ConversationTurn, to_messages
from .observability import get_logger

logger = get_logger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL)

REWRITE_INSTRUCTION = (
    "Given the above conversation, generate a concise vector store search query "
    "to look up in order to get information relevant to the conversation."
)

REWRITE_PROMPT = ChatPromptTemplate.from_messages(
    [
        MessagesPlaceholder("chat_history"),
        ("user", "{input}"),
        ("user", REWRITE_INSTRUCTION),
    ]
)


def _clean_query(raw: Any) -> str:
    text = _THINK_RE.sub("", str(raw or ""))
    return text.strip().strip('"').strip()


class QueryRewriter:
    def __init__(self, llm: Any, prompt: ChatPromptTemplate = REWRITE_PROMPT):
        self.llm = llm
        self.prompt = prompt
        self.chain = prompt | llm | StrOutputParser()

    async def rewrite(self, history: Sequence[ConversationTurn], question: str) -> str:
        if not question or not question.strip():
            raise ValidationError("A question is required.")
        if not history:
            return question

        try:
            raw = await self.chain.ainvoke({"chat_history": to_messages(history), "input": question})
        except Exception as exc:
            logger.error("query_rewrite_failed", error=str(exc), history_turns=len(history))
            raise UpstreamModelError(f"Query rewriting failed: {exc}") from exc

        query = _clean_query(raw)
        if not query:
            raise UpstreamModelError("Query rewriting returned an empty search query.")
        logger.info("query_rewritten", history_turns=len(history), query_chars=len(query))
        return query
