import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from pvesnap.client import DEFAULT_POLL_INTERVAL, DEFAULT_TASK_TIMEOUT, ProxmoxClient
from pvesnap.errors import (
    EncryptedDiskError,
    NotFoundError,
    ProxmoxError,
    SnapshotExistsError,
    SnapshotNameError,
    TaskTimeoutError,
)
from pvesnap.models import Guest, GuestType, Snapshot, Task

logger = logging.getLogger(__name__)

NAME_REGEX = re.compile(r'^[a-zA-Z][a-zA-Z0-9_-]*$')
NAME_MAX_LENGTH = 40
RESERVED_NAMES = ('current',)
DISK_KEY_REGEX = re.compile(r'^(ide|sata|scsi|virtio|efidisk|tpmstate|unused|rootfs|mp)\d*$')


class OperationState(str, Enum):
    PENDING = 'pending'
    SUBMITTED = 'submitted'
    POLLING = 'polling'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'


TERMINAL_STATES = (OperationState.SUCCEEDED, OperationState.FAILED, OperationState.TIMED_OUT)

_TRANSITIONS = {
    OperationState.PENDING: (OperationState.SUBMITTED, OperationState.FAILED),
    OperationState.SUBMITTED: (OperationState.POLLING, OperationState.FAILED),
    OperationState.POLLING: TERMINAL_STATES,
}


class InvalidTransitionError(RuntimeError):
    pass


class OperationTracker:
    """State machine of one mutating operation on one guest."""

    def __init__(self, guest: Guest, action: str):
        self.guest = guest
        self.action = action
        self.state = OperationState.PENDING
        self.task: Optional[Task] = None

    def advance(self, new_state: OperationState):
        if new_state not in _TRANSITIONS.get(self.state, ()):
            raise InvalidTransitionError(f"{self.action} on {self.guest.label()}: "
                                         f"{self.state.value} -> {new_state.value} is not allowed")
        logger.debug(f"{self.action} on {self.guest.label()}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def fail(self, error: Exception):
        self.advance(OperationState.TIMED_OUT if isinstance(error, TaskTimeoutError) else OperationState.FAILED)


class OperationRecord(BaseModel):
    """Outcome of a successful mutating operation."""

    guest_id: int
    action: str
    state: OperationState
    upid: Optional[str] = None
    snapshot: Optional[str] = None
    include_memory_state: bool = False


def validate_snapshot_name(name: str):
    """Validate snapshot name: starts with a letter, letters/numbers/hyphens/underscores, 40 chars max"""
    if not name or not NAME_REGEX.match(name):
        raise SnapshotNameError(f"Invalid snapshot name '{name}': must start with a letter and contain only "
                                "letters, numbers, hyphens, and underscores")
    if len(name) > NAME_MAX_LENGTH:
        raise SnapshotNameError(f"Invalid snapshot name '{name}': longer than {NAME_MAX_LENGTH} characters")
    if name in RESERVED_NAMES:
        raise SnapshotNameError(f"Invalid snapshot name '{name}': reserved by Proxmox")


def has_encrypted_disk(config: Dict) -> bool:
    """True if any disk entry or the guest tags mention LUKS."""
    for key, value in config.items():
        if DISK_KEY_REGEX.match(key) and 'luks' in str(value).lower():
            return True
    tags = re.split(r'[;,\s]+', str(config.get('tags', '')).lower())
    return 'luks' in tags


def default_snapshot_name(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime('snapshot-%Y%m%d-%H%M%S')


def default_description(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime('Snapshot created on %Y-%m-%d %H:%M:%S')


def _parse_snapshot(item: Dict) -> Snapshot:
    snaptime = item.get('snaptime')
    return Snapshot(
        name=item['name'],
        description=(item.get('description') or '').strip() or None,
        created_at=datetime.fromtimestamp(int(snaptime), tz=timezone.utc) if snaptime else None,
        includes_memory_state=bool(int(item.get('vmstate') or 0)),
        parent=item.get('parent') or None,
    )


def _sort_key(snapshot: Snapshot):
    created = snapshot.created_at.timestamp() if snapshot.created_at else float('-inf')
    return created, snapshot.name


class SnapshotEngine:
    def __init__(self, client: ProxmoxClient, poll_interval=DEFAULT_POLL_INTERVAL, timeout=DEFAULT_TASK_TIMEOUT):
        """
        Drive snapshot operations on guests resolved by the cluster module.

        :param client: ProxmoxClient
        :param poll_interval: Seconds between task status polls
        :param timeout: Seconds before a task is reported as timed out
        """
        self.client = client
        self.poll_interval = poll_interval
        self.timeout = timeout

    def _run(self, guest: Guest, action: str, submit: Callable[[], object], **details) -> OperationRecord:
        tracker = OperationTracker(guest, action)
        try:
            pending = submit()
            tracker.advance(OperationState.SUBMITTED)
            tracker.advance(OperationState.POLLING)
            if isinstance(pending, Task):
                tracker.task = pending
                self.client.await_task(pending, self.poll_interval, self.timeout)
        except ProxmoxError as e:
            tracker.fail(e)
            logger.error(f"{action} on {guest.label()} {tracker.state.value}: {e}")
            raise
        tracker.advance(OperationState.SUCCEEDED)
        return OperationRecord(
            guest_id=guest.id,
            action=action,
            state=tracker.state,
            upid=tracker.task.upid if tracker.task else None,
            **details,
        )

    def list(self, guest: Guest) -> List[Snapshot]:
        """
        List a guest's snapshots, oldest first, without the 'current' pseudo-entry.

        :param guest: Guest to inspect
        :return: List of Snapshot
        """
        items = self.client.call(guest.node, 'GET', f'{guest.path}/snapshot') or []
        snapshots = [_parse_snapshot(item) for item in items if item.get('name') != 'current']
        snapshots.sort(key=_sort_key)
        logger.info(f"Retrieved {len(snapshots)} snapshots for {guest.label()}")
        return snapshots

    def _require_snapshot(self, guest: Guest, name: str):
        if name not in [s.name for s in self.list(guest)]:
            raise NotFoundError(f"Snapshot '{name}' not found on {guest.label()}")

    def config(self, guest: Guest) -> Dict:
        return self.client.call(guest.node, 'GET', f'{guest.path}/config') or {}

    def status(self, guest: Guest) -> Dict:
        """Current runtime status of a guest (status/current)."""
        return self.client.call(guest.node, 'GET', f'{guest.path}/status/current') or {}

    def create(self, guest: Guest, name: Optional[str] = None, description: Optional[str] = None,
               include_memory_state: bool = False) -> OperationRecord:
        """
        Create a snapshot and wait for the task to finish.

        :param guest: Target guest
        :param name: Snapshot name, generated from the current time if omitted
        :param description: Optional description
        :param include_memory_state: Save RAM state (running QEMU guests only)
        :return: OperationRecord
        """
        now = datetime.now()
        if name is None:
            name = default_snapshot_name(now)
        if description is None:
            description = default_description(now)
        validate_snapshot_name(name)

        if include_memory_state and (not guest.running or guest.type is not GuestType.QEMU):
            logger.info(f"{guest.label()} has no memory state to save, creating '{name}' without it")
            include_memory_state = False
        if include_memory_state and has_encrypted_disk(self.config(guest)):
            raise EncryptedDiskError(f"{guest.label()} has a LUKS-encrypted disk; "
                                     "snapshots with memory state are not supported")

        if name in [s.name for s in self.list(guest)]:
            raise SnapshotExistsError(f"Snapshot '{name}' already exists for {guest.label()}")

        data = {'snapname': name, 'description': description}
        if include_memory_state:
            data['vmstate'] = 1
        return self._run(
            guest, 'create',
            lambda: self.client.submit(guest.node, 'POST', f'{guest.path}/snapshot', data),
            snapshot=name, include_memory_state=include_memory_state,
        )

    def delete(self, guest: Guest, name: str) -> OperationRecord:
        """
        Delete a snapshot and wait for the task to finish.

        :param guest: Target guest
        :param name: Snapshot name, must exist
        :return: OperationRecord
        """
        self._require_snapshot(guest, name)
        return self._run(
            guest, 'delete',
            lambda: self.client.submit(guest.node, 'DELETE', f'{guest.path}/snapshot/{name}'),
            snapshot=name,
        )

    def rollback(self, guest: Guest, name: str) -> OperationRecord:
        """
        Roll a guest back to a snapshot and wait for the task to finish.

        Running guests are stopped by Proxmox as part of the rollback.

        :param guest: Target guest
        :param name: Snapshot name, must exist
        :return: OperationRecord
        """
        self._require_snapshot(guest, name)
        return self._run(
            guest, 'rollback',
            lambda: self.client.submit(guest.node, 'POST', f'{guest.path}/snapshot/{name}/rollback'),
            snapshot=name,
        )
