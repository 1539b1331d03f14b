"""Search, question answering and vector similarity."""

from mneme.retrieval.question import QuestionType, is_question, parse_question
from mneme.retrieval.search import KnowledgeSearch, entity_relevance, memory_relevance
from mneme.retrieval.vector import (
    VectorSearch,
    cosine_similarity,
    pack_embedding,
    unpack_embedding,
)

__all__ = [
    "KnowledgeSearch",
    "QuestionType",
    "VectorSearch",
    "cosine_similarity",
    "entity_relevance",
    "is_question",
    "memory_relevance",
    "pack_embedding",
    "parse_question",
    "unpack_embedding",
]
