"""Task claim registry - exclusive node ownership."""

import threading

from loguru import logger

from sprintflow.core.exceptions import AlreadyClaimedError, WorkerBusyError
from sprintflow.scheduling.models import Allocation


class TaskClaimRegistry:
    """
    Atomic claim/release map from nodes to workers.

    A node has at most one owner and a worker owns at most one node.
    The check-then-set in :meth:`claim` runs under a lock, so two
    workers racing for a freshly unblocked node cannot both win, whether
    they run on threads or as asyncio tasks.

    Example:
        >>> registry = TaskClaimRegistry()
        >>> registry.claim("worker-1", "sprint-3")
        Allocation(node_id='sprint-3', worker_id='worker-1')
        >>> registry.claim("worker-2", "sprint-3")
        Traceback (most recent call last):
        ...
        AlreadyClaimedError: Node sprint-3 already claimed by worker-1
    """

    def __init__(self) -> None:
        self._owners: dict[str, str] = {}  # node_id -> worker_id
        self._held: dict[str, str] = {}  # worker_id -> node_id
        self._lock = threading.Lock()

    def claim(self, worker_id: str, node_id: str) -> Allocation:
        """
        Claim a node for a worker.

        Claiming a node the worker already owns succeeds again.

        Raises:
            AlreadyClaimedError: If another worker owns the node.
            WorkerBusyError: If the worker owns a different node.
        """
        with self._lock:
            owner = self._owners.get(node_id)
            if owner is not None and owner != worker_id:
                raise AlreadyClaimedError(node_id, owner)
            held = self._held.get(worker_id)
            if held is not None and held != node_id:
                raise WorkerBusyError(worker_id, held)
            self._owners[node_id] = worker_id
            self._held[worker_id] = node_id

        logger.debug(f"{worker_id} claimed {node_id}")
        return Allocation(node_id=node_id, worker_id=worker_id)

    def release(self, worker_id: str, node_id: str) -> bool:
        """
        Release a claim held by ``worker_id``.

        Returns:
            True if the claim was removed, False if the worker did not own
            the node.
        """
        with self._lock:
            if self._owners.get(node_id) != worker_id:
                return False
            del self._owners[node_id]
            self._held.pop(worker_id, None)

        logger.debug(f"{worker_id} released {node_id}")
        return True

    def release_all(self) -> list[Allocation]:
        """Drop every claim and return what was held."""
        with self._lock:
            released = [
                Allocation(node_id=node_id, worker_id=worker_id)
                for node_id, worker_id in sorted(self._owners.items())
            ]
            self._owners.clear()
            self._held.clear()
        return released

    def owner_of(self, node_id: str) -> str | None:
        with self._lock:
            return self._owners.get(node_id)

    def claimed_by(self, worker_id: str) -> str | None:
        with self._lock:
            return self._held.get(worker_id)

    def snapshot(self) -> dict[str, str]:
        """Copy of the node -> worker map."""
        with self._lock:
            return dict(self._owners)

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners)
