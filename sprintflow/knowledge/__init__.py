"""Knowledge store - external mirror of sprint status."""

from sprintflow.knowledge.store import (
    InMemoryKnowledgeStore,
    KnowledgeStore,
    RetryingKnowledgeStore,
)

__all__ = [
    "InMemoryKnowledgeStore",
    "KnowledgeStore",
    "RetryingKnowledgeStore",
]
