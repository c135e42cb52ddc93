from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Iterable, List, Optional, Union

from .models import ChatMessage, TextSegment

logger = logging.getLogger("ai-services")

RETRIEVAL_PREAMBLE = "\n\nHere is some information that might be useful for answering:\n\n"

_WORD = re.compile(r"\w+")


class Retriever:
    """Retriever contract."""

    def find_relevant(self, text: str) -> List[TextSegment]:  # pragma: no cover - interface only
        raise NotImplementedError


class KeywordRetriever(Retriever):
    """
    Ranks documents by the number of distinct query words they contain.

    Intended for small, static knowledge snippets declared next to a service;
    similarity search over embeddings belongs to a vector store.
    """

    def __init__(self, documents: Iterable[Union[str, TextSegment]], max_results: int = 3, min_score: int = 1):
        self.segments = [d if isinstance(d, TextSegment) else TextSegment(text=d) for d in documents]
        self.max_results = max_results
        self.min_score = min_score

    def find_relevant(self, text: str) -> List[TextSegment]:
        query = {w.lower() for w in _WORD.findall(text)}
        scored = []
        for index, segment in enumerate(self.segments):
            words = {w.lower() for w in _WORD.findall(segment.text)}
            score = len(query & words)
            if score >= self.min_score:
                scored.append((-score, index, segment))
        scored.sort(key=lambda item: (item[0], item[1]))
        return [segment for _, _, segment in scored[: self.max_results]]


class RetrievalAugmenter:
    """Appends retrieved context to the user message when a retriever is configured."""

    def __init__(self, retriever: Optional[Retriever] = None):
        self.retriever = retriever

    async def augment(self, user_message: ChatMessage, audit: Any = None) -> ChatMessage:
        if self.retriever is None:
            return user_message

        relevant = await asyncio.to_thread(self.retriever.find_relevant, user_message.text or "")
        if not relevant:
            logger.debug("No relevant information was found")
            return user_message

        concatenated = "\n\n".join(segment.text for segment in relevant)
        logger.debug("Retrieved relevant information:\n%s\n", concatenated)

        augmented = ChatMessage.user((user_message.text or "") + RETRIEVAL_PREAMBLE + concatenated, name=user_message.name)
        if audit is not None:
            audit.on_relevant_documents(list(relevant), augmented)
        return augmented
