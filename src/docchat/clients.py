# /docchat/clients.py
"""
Process-wide handles for the external collaborators: the chat model, the
embedding function and the namespaced vector index.

They are built once at startup (see ``build_clients``) and passed by reference
into every pipeline run. Nothing here is mutated after construction.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import chromadb
from langchain_chroma import Chroma
from langchain_huggingface import HuggingFaceEmbeddings
from langchain_ollama import ChatOllama

try:
    from langchain_groq import ChatGroq
except ImportError:
    ChatGroq = None

from .config import (
    API_MODEL_NAME,
    DB_PATH,
    EMBEDDING_MODEL_NAME,
    GROQ_API_AVAILABLE,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_S,
    LOCAL_MODEL_NAME,
    RETRIEVER_K,
    USE_API_LLM,
    get_model_kwargs,
)
from .observability import get_logger

logger = get_logger(__name__)


def build_embeddings(model_name: str = EMBEDDING_MODEL_NAME):
    return HuggingFaceEmbeddings(
        model_name=model_name,
        model_kwargs=get_model_kwargs(),
    )


def build_llm():
    """Initializes the chat model based on global configuration.

    Returns None when the configured backend is unavailable; the API answers
    503 until a model is configured.
    """
    timeout = LLM_TIMEOUT_S or None
    if USE_API_LLM:
        if not GROQ_API_AVAILABLE or ChatGroq is None or not os.getenv("GROQ_API_KEY"):
            logger.error("llm_unavailable", backend="groq", reason="missing GROQ_API_KEY or langchain-groq")
            return None
        logger.info("llm_selected", backend="groq", model=API_MODEL_NAME)
        return ChatGroq(
            model=API_MODEL_NAME,
            temperature=LLM_TEMPERATURE,
            max_tokens=LLM_MAX_TOKENS,
            timeout=timeout,
            api_key=os.getenv("GROQ_API_KEY"),
        )
    logger.info("llm_selected", backend="ollama", model=LOCAL_MODEL_NAME)
    return ChatOllama(
        model=LOCAL_MODEL_NAME,
        temperature=LLM_TEMPERATURE,
        num_predict=LLM_MAX_TOKENS,
        client_kwargs={"timeout": timeout},
    )


class ChromaVectorIndex:
    """One Chroma collection per namespace over a shared client.

    Collections are opened, never created: ingestion happens elsewhere, and a
    request for an unknown namespace must fail rather than search an empty
    collection.
    """

    def __init__(self, embeddings: Any, *, persist_directory: str | None = None, client: Any = None):
        if client is None:
            client = chromadb.PersistentClient(path=persist_directory or DB_PATH)
        self._client = client
        self._embeddings = embeddings

    @property
    def client(self):
        return self._client

    def store_for(self, namespace: str) -> Chroma:
        return Chroma(
            client=self._client,
            collection_name=namespace,
            embedding_function=self._embeddings,
            create_collection_if_not_exists=False,
        )


@dataclass(frozen=True)
class ServiceClients:
    llm: Any
    vector_index: Any
    retriever_k: int = RETRIEVER_K

    @property
    def ready(self) -> bool:
        return self.llm is not None and self.vector_index is not None


def build_clients() -> ServiceClients:
    """Constructs the shared collaborator handles once per process."""
    embeddings = build_embeddings()
    vector_index = ChromaVectorIndex(embeddings)
    llm = build_llm()
    logger.info("clients_ready", llm=type(llm).__name__ if llm else None, db_path=DB_PATH, k=RETRIEVER_K)
    return ServiceClients(llm=llm, vector_index=vector_index)
