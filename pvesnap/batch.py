"""Apply one snapshot operation to many guests with bounded concurrency."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence

from pvesnap.cluster import resolve
from pvesnap.errors import ProxmoxError
from pvesnap.models import ClusterTopology, Guest
from pvesnap.snapshot import SnapshotEngine, default_description, default_snapshot_name

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3


class Operation:
    """An action name plus the engine call to run for each guest."""

    def __init__(self, action: str, func: Callable[[SnapshotEngine, Guest], Any]):
        self.action = action
        self.func = func

    def __call__(self, engine: SnapshotEngine, guest: Guest):
        return self.func(engine, guest)

    @classmethod
    def create(cls, name=None, description=None, include_memory_state=False):
        """The default name is generated once, so every target gets the same snapshot name."""
        now = datetime.now()
        if name is None:
            name = default_snapshot_name(now)
        if description is None:
            description = default_description(now)
        return cls('create', lambda engine, guest: engine.create(guest, name, description, include_memory_state))

    @classmethod
    def list(cls):
        return cls('list', lambda engine, guest: engine.list(guest))

    @classmethod
    def delete(cls, name):
        return cls('delete', lambda engine, guest: engine.delete(guest, name))

    @classmethod
    def rollback(cls, name):
        return cls('rollback', lambda engine, guest: engine.rollback(guest, name))


class BatchResult:
    """Result of an operation on a single target."""

    def __init__(self, target: str, success: bool, error_kind: Optional[str] = None, message: str = "",
                 guest: Optional[Guest] = None, value: Any = None, duration: float = 0):
        self.target = target
        self.success = success
        self.error_kind = error_kind
        self.message = message
        self.guest = guest
        self.value = value
        self.duration = duration

    @property
    def outcome(self) -> str:
        return 'success' if self.success else 'failure'

    def to_dict(self):
        result = {
            'target': self.target,
            'outcome': self.outcome,
            'guest': self.guest.id if self.guest else None,
            'node': self.guest.node.name if self.guest else None,
            'duration': round(self.duration, 3),
        }
        if not self.success:
            result['error'] = self.error_kind
            result['message'] = self.message
        return result


class BatchReport:
    def __init__(self, action: str, results: List[BatchResult]):
        self.action = action
        self.results = results

    def __iter__(self):
        return iter(self.results)

    def __len__(self):
        return len(self.results)

    @property
    def succeeded(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def failures(self) -> List[BatchResult]:
        return [r for r in self.results if not r.success]

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


class BatchExecutor:
    def __init__(self, engine: SnapshotEngine, concurrency: int = DEFAULT_CONCURRENCY):
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.engine = engine
        self.concurrency = concurrency

    def _execute(self, target: str, guest: Guest, operation: Operation) -> BatchResult:
        start_time = time.time()
        try:
            value = operation(self.engine, guest)
        except ProxmoxError as e:
            return BatchResult(target, False, e.kind, e.message, guest, duration=time.time() - start_time)
        except Exception as e:
            logger.exception(f"Unexpected error during {operation.action} on {target}")
            return BatchResult(target, False, type(e).__name__, str(e), guest, duration=time.time() - start_time)
        return BatchResult(target, True, guest=guest, value=value, duration=time.time() - start_time)

    def run(self, topology: ClusterTopology, identifiers: Sequence[str], operation: Operation) -> BatchReport:
        """
        Resolve every identifier and run the operation on each resolved guest.

        :param topology: Result of cluster.discover()
        :param identifiers: User-supplied targets, reported in this order
        :param operation: Operation to apply
        :return: BatchReport with one BatchResult per identifier
        """
        slots: List[Any] = []
        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            for identifier in identifiers:
                try:
                    guest = resolve(topology, identifier)
                except ProxmoxError as e:
                    logger.warning(f"Cannot resolve '{identifier}': {e}")
                    slots.append(BatchResult(identifier, False, e.kind, e.message))
                    continue
                slots.append(executor.submit(self._execute, identifier, guest, operation))
            results = [slot if isinstance(slot, BatchResult) else slot.result() for slot in slots]
        failed = sum(1 for r in results if not r.success)
        logger.info(f"{operation.action}: {len(results) - failed}/{len(results)} targets succeeded")
        return BatchReport(operation.action, results)
