"""Worker pool - registry and best-fit matching of workers."""

from collections.abc import Iterable

from loguru import logger

from sprintflow.core.exceptions import UnknownWorkerError
from sprintflow.scheduling.models import Node, SprintType, Worker, WorkerStatus


class WorkerPool:
    """
    Registry of workers with a scoring function for best-fit matching.

    Workers are kept in registration order, which is also the tie-break
    order when two workers score the same. Workers are never removed;
    :meth:`mark_offline` takes them out of rotation.

    Example:
        >>> pool = WorkerPool()
        >>> pool.register("backend-1", skills={"coding", "development"})
        >>> pool.register("lead", skills={"planning"}, worker_type="manager")
        >>> pool.find_best_match(node, pool.get_available()).id
        'backend-1'
    """

    SKILL_WEIGHT = 10
    MANAGER_PLANNING_BONUS = 20

    def __init__(self) -> None:
        self._workers: dict[str, Worker] = {}

    def register(
        self,
        worker_id: str,
        skills: Iterable[str] = (),
        worker_type: str = "specialist",
    ) -> Worker:
        """
        Register a worker, or bring a known worker back online.

        Args:
            worker_id: Unique worker identifier.
            skills: Skills the worker offers.
            worker_type: e.g. ``manager`` or ``specialist``.

        Returns:
            The registered worker.
        """
        existing = self._workers.get(worker_id)
        if existing is not None:
            existing.skills = set(skills) or existing.skills
            existing.worker_type = worker_type
            if existing.status == WorkerStatus.OFFLINE:
                existing.status = WorkerStatus.AVAILABLE
            return existing

        worker = Worker(id=worker_id, skills=set(skills), worker_type=worker_type)
        self._workers[worker_id] = worker
        logger.info(f"Registered worker: {worker_id} ({worker_type})")
        return worker

    def get(self, worker_id: str) -> Worker:
        worker = self._workers.get(worker_id)
        if worker is None:
            raise UnknownWorkerError(worker_id)
        return worker

    @property
    def workers(self) -> list[Worker]:
        """All workers in registration order."""
        return list(self._workers.values())

    def get_available(self) -> list[Worker]:
        """Available workers in registration order."""
        return [w for w in self._workers.values() if w.status == WorkerStatus.AVAILABLE]

    def has_online_workers(self) -> bool:
        return any(w.status != WorkerStatus.OFFLINE for w in self._workers.values())

    def mark_busy(self, worker_id: str, node_id: str) -> None:
        worker = self.get(worker_id)
        worker.status = WorkerStatus.BUSY
        worker.current_node = node_id

    def mark_available(self, worker_id: str) -> None:
        worker = self.get(worker_id)
        worker.current_node = None
        if worker.status != WorkerStatus.OFFLINE:
            worker.status = WorkerStatus.AVAILABLE

    def mark_offline(self, worker_id: str) -> None:
        worker = self.get(worker_id)
        worker.status = WorkerStatus.OFFLINE
        logger.info(f"Worker {worker_id} is offline")

    def record_result(self, worker_id: str, success: bool, duration: float = 0.0) -> None:
        """Fold one sprint outcome into the worker's performance figures."""
        perf = self.get(worker_id).performance
        if success:
            total = perf.average_duration * perf.tasks_completed
            perf.tasks_completed += 1
            perf.average_duration = (total + duration) / perf.tasks_completed
        else:
            perf.tasks_failed += 1
        attempts = perf.tasks_completed + perf.tasks_failed
        perf.success_rate = 100.0 * perf.tasks_completed / attempts

    def score(self, node: Node, worker: Worker) -> float:
        """Fit of a worker for a node; higher is better."""
        score = self.SKILL_WEIGHT * len(node.required_skills & worker.skills)
        score += worker.performance.success_rate / 10
        if node.sprint_type == SprintType.PLANNING and worker.worker_type == "manager":
            score += self.MANAGER_PLANNING_BONUS
        return score

    def find_best_match(self, node: Node, available_workers: list[Worker]) -> Worker | None:
        """
        Pick the highest scoring worker for a node.

        Ties go to the worker registered first, whatever the order of
        ``available_workers``. Unregistered workers rank after registered
        ones in the order given.

        Returns:
            Best worker, or None if the list is empty.
        """
        rank = {worker_id: i for i, worker_id in enumerate(self._workers)}
        best: Worker | None = None
        best_score = float("-inf")
        for worker in sorted(available_workers, key=lambda w: rank.get(w.id, len(rank))):
            score = self.score(node, worker)
            if score > best_score:
                best, best_score = worker, score
        return best

    def candidates_for(self, node: Node) -> list[str]:
        """Online workers sharing at least one required skill with the node."""
        return [
            w.id for w in self._workers.values()
            if w.status != WorkerStatus.OFFLINE and node.required_skills & w.skills
        ]

    def __len__(self) -> int:
        return len(self._workers)
