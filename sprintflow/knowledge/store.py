"""Knowledge store boundary.

The orchestrator mirrors every status transition into an external
knowledge store (a Notion-like task database). Only three calls are
needed; the store's own schema stays opaque. Store failures must never
corrupt in-memory scheduling state, so calls go through
:class:`RetryingKnowledgeStore`, which retries with backoff and logs the
final failure instead of raising.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol, TypeVar, runtime_checkable
from uuid import uuid4

from loguru import logger

from sprintflow.scheduling.models import Node

T = TypeVar("T")


@runtime_checkable
class KnowledgeStore(Protocol):
    """Narrow interface to the external task record store."""

    async def create_task_record(self, node: Node) -> str:
        """Create a record for a node and return its record id."""
        ...

    async def update_task_status(self, record_id: str, status: str) -> None:
        """Set the status of a record."""
        ...

    async def claim_task_record(self, record_id: str, worker_id: str) -> None:
        """Assign a record to a worker."""
        ...


class InMemoryKnowledgeStore:
    """
    Process-local knowledge store.

    Keeps one dict per record plus an append-only history of status
    changes, which makes it handy for dry runs and tests.

    Example:
        >>> store = InMemoryKnowledgeStore()
        >>> record_id = await store.create_task_record(node)
        >>> await store.update_task_status(record_id, "in_progress")
        >>> store.records[record_id]["status"]
        'in_progress'
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.history: list[tuple[str, str]] = []

    async def create_task_record(self, node: Node) -> str:
        record_id = f"record-{uuid4().hex[:12]}"
        self.records[record_id] = {
            "id": record_id,
            "sprint_id": node.id,
            "title": node.title or node.id,
            "status": node.status.value,
            "priority": node.priority,
            "estimated_duration": node.estimated_duration,
            "required_skills": sorted(node.required_skills),
            "dependencies": sorted(node.depends_on),
            "assignee": None,
            "created_at": datetime.now().isoformat(),
        }
        self.history.append((record_id, node.status.value))
        return record_id

    async def update_task_status(self, record_id: str, status: str) -> None:
        record = self._get(record_id)
        record["status"] = status
        record["updated_at"] = datetime.now().isoformat()
        self.history.append((record_id, status))

    async def claim_task_record(self, record_id: str, worker_id: str) -> None:
        self._get(record_id)["assignee"] = worker_id

    def status_history(self, sprint_id: str) -> list[str]:
        """Statuses recorded for a sprint, oldest first."""
        ids = {rid for rid, rec in self.records.items() if rec["sprint_id"] == sprint_id}
        return [status for rid, status in self.history if rid in ids]

    def _get(self, record_id: str) -> dict[str, Any]:
        record = self.records.get(record_id)
        if record is None:
            raise KeyError(f"Unknown record: {record_id}")
        return record


class RetryingKnowledgeStore:
    """
    Wrap a knowledge store with retries and exponential backoff.

    Every call is attempted up to ``max_retries`` times, sleeping
    ``retry_delay * 2**attempt`` between attempts. When all attempts fail
    the error is logged and a neutral value returned.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        """
        Initialize the wrapper.

        Args:
            store: Underlying store.
            max_retries: Attempts per call.
            retry_delay: Initial delay between attempts in seconds.
        """
        self.store = store
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.failures = 0

    async def create_task_record(self, node: Node) -> str | None:
        return await self._call(
            f"create record for {node.id}",
            lambda: self.store.create_task_record(node),
        )

    async def update_task_status(self, record_id: str | None, status: str) -> None:
        if record_id is None:
            return
        await self._call(
            f"update {record_id} to {status}",
            lambda: self.store.update_task_status(record_id, status),
        )

    async def claim_task_record(self, record_id: str | None, worker_id: str) -> None:
        if record_id is None:
            return
        await self._call(
            f"claim {record_id} for {worker_id}",
            lambda: self.store.claim_task_record(record_id, worker_id),
        )

    async def _call(self, description: str, operation: Callable[[], Awaitable[T]]) -> T | None:
        for attempt in range(self.max_retries):
            try:
                return await operation()
            except Exception as e:
                if attempt + 1 >= self.max_retries:
                    self.failures += 1
                    logger.error(
                        f"Knowledge store failed to {description} after "
                        f"{self.max_retries} attempts: {e}"
                    )
                    return None
                delay = self.retry_delay * (2**attempt)
                logger.warning(
                    f"Knowledge store failed to {description} "
                    f"(attempt {attempt + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
        return None
