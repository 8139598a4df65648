"""Data model shared by the client, resolver, engine and batch executor."""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class GuestType(str, Enum):
    QEMU = 'qemu'
    LXC = 'lxc'


class TaskStatus(str, Enum):
    RUNNING = 'running'
    OK = 'ok'
    ERROR = 'error'


class ClusterNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    address: Optional[str] = None
    online: bool = True


class Guest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: Optional[str] = None
    type: GuestType
    node: ClusterNode
    running: bool = False
    tags: Optional[str] = None

    @property
    def path(self) -> str:
        """API path of the guest relative to its node."""
        return f'/{self.type.value}/{self.id}'

    def label(self) -> str:
        if self.name:
            return f"{self.type.value} {self.id} ({self.name})"
        return f"{self.type.value} {self.id}"


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    includes_memory_state: bool = False
    parent: Optional[str] = None


class Task(BaseModel):
    """Handle for an asynchronous operation on one node."""
    model_config = ConfigDict(frozen=True)

    upid: str
    node: ClusterNode
    status: TaskStatus = TaskStatus.RUNNING
    exit_message: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status is not TaskStatus.RUNNING


class Immediate(BaseModel):
    """Synchronous API response, the other half of ``submit``'s result."""
    model_config = ConfigDict(frozen=True)

    value: Any = None


class ClusterTopology(BaseModel):
    """Snapshot of nodes and guests taken by one discovery run."""
    model_config = ConfigDict(frozen=True)

    nodes: Tuple[ClusterNode, ...] = ()
    guests: Tuple[Guest, ...] = ()

    def node(self, name: str) -> Optional[ClusterNode]:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def guests_on(self, node_name: str) -> List[Guest]:
        return [g for g in self.guests if g.node.name == node_name]

    def by_id(self, vmid: int) -> Optional[Guest]:
        for guest in self.guests:
            if guest.id == vmid:
                return guest
        return None

    def by_name(self, name: str) -> List[Guest]:
        return [g for g in self.guests if g.name == name]


def parse_upid(upid: str) -> dict:
    """
    Split a task UPID into its fields.

    Format: ``UPID:<node>:<pid>:<pstart>:<starttime>:<type>:<id>:<user>:``
    """
    parts = upid.split(':')
    if len(parts) < 8 or parts[0] != 'UPID':
        raise ValueError(f"Malformed UPID '{upid}'")
    return {
        'node': parts[1],
        'pid': parts[2],
        'pstart': parts[3],
        'starttime': int(parts[4], 16) if parts[4] else None,
        'type': parts[5],
        'id': parts[6],
        'user': parts[7],
    }


def snapshot_chain(snapshots: List[Snapshot], name: str) -> List[Snapshot]:
    """Return the lineage of ``name``, oldest ancestor first."""
    by_name = {s.name: s for s in snapshots}
    chain = []
    seen = set()
    current = by_name.get(name)
    while current is not None and current.name not in seen:
        seen.add(current.name)
        chain.append(current)
        current = by_name.get(current.parent) if current.parent else None
    chain.reverse()
    return chain
