"""Resource handles and the Topology they form.

Tracks per-handle state (pending, creating, ready, failed, deleted). Nothing
is persisted to disk: a Topology lives in memory for one run and is
rebuilt from cloud-side tags by the discoverer.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

PENDING = 'pending'
CREATING = 'creating'
READY = 'ready'
FAILED = 'failed'
DELETED = 'deleted'


@dataclass
class ResourceHandle:
    """Record of one provisioned cloud object.

    Attributes:
        name: Graph node name (e.g. 'web_sg')
        kind: Cloud Gateway resource kind
        project_tag: Project tag shared by the whole topology
        id: Cloud-side identifier once created
        name_tag: Name tag, None for untagged kinds
        role_tag: bastion/web/app where applicable
        depends_on: Names of the handles this one was built on
        state: pending, creating, ready, failed or deleted
        attributes: Kind-specific values returned by the gateway
        transitions: (state, timestamp) history
        error: Error message if failed
    """
    name: str
    kind: str
    project_tag: str
    id: Optional[str] = None
    name_tag: Optional[str] = None
    role_tag: Optional[str] = None
    depends_on: list[str] = field(default_factory=list)
    state: str = PENDING
    attributes: dict[str, Any] = field(default_factory=dict)
    transitions: list[tuple[str, float]] = field(default_factory=list)
    error: Optional[str] = None

    def _move(self, state: str) -> None:
        self.state = state
        self.transitions.append((state, time.time()))

    def start(self) -> None:
        self._move(CREATING)

    def created(self, resource_id: str, attributes: Optional[dict] = None) -> None:
        """Record the id returned by the create call."""
        self.id = resource_id
        if attributes:
            self.attributes.update(attributes)

    def ready(self, attributes: Optional[dict] = None) -> None:
        if attributes:
            self.attributes.update(attributes)
        self._move(READY)

    def fail(self, error: str) -> None:
        self.error = error
        self._move(FAILED)

    def mark_deleted(self) -> None:
        self._move(DELETED)

    @property
    def tags(self) -> dict[str, str]:
        """Cloud-side tags for this handle."""
        tags = {'Project': self.project_tag}
        if self.name_tag:
            tags['Name'] = self.name_tag
        if self.role_tag:
            tags['Role'] = self.role_tag
        return tags

    @property
    def duration(self) -> Optional[float]:
        if len(self.transitions) >= 2:
            return self.transitions[-1][1] - self.transitions[0][1]
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'kind': self.kind,
            'id': self.id,
            'state': self.state,
            'project_tag': self.project_tag,
        }
        if self.name_tag is not None:
            d['name_tag'] = self.name_tag
        if self.role_tag is not None:
            d['role_tag'] = self.role_tag
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.attributes:
            d['attributes'] = dict(self.attributes)
        if self.error is not None:
            d['error'] = self.error
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceHandle':
        return cls(
            name=data['name'],
            kind=data['kind'],
            project_tag=data['project_tag'],
            id=data.get('id'),
            name_tag=data.get('name_tag'),
            role_tag=data.get('role_tag'),
            depends_on=list(data.get('depends_on', [])),
            state=data.get('state', PENDING),
            attributes=dict(data.get('attributes', {})),
            error=data.get('error'),
        )


class Topology:
    """All live handles sharing one project tag, keyed by node name.

    Insertion order is preserved, so a topology built by walking the
    graph forward iterates in creation order.
    """

    def __init__(self, project_tag: str):
        self.project_tag = project_tag
        self._handles: dict[str, ResourceHandle] = {}

    def add(self, handle: ResourceHandle) -> ResourceHandle:
        """Register a handle.

        Raises:
            ValueError: If the handle belongs to another project or the
                name is already taken
        """
        if handle.project_tag != self.project_tag:
            raise ValueError(
                f"Handle '{handle.name}' has project tag '{handle.project_tag}', "
                f"expected '{self.project_tag}'"
            )
        if handle.name in self._handles:
            raise ValueError(f"Topology already has a handle named '{handle.name}'")
        self._handles[handle.name] = handle
        return handle

    def remove(self, name: str) -> Optional[ResourceHandle]:
        """Drop a handle from the live set, returning it if present."""
        return self._handles.pop(name, None)

    def get(self, name: str) -> Optional[ResourceHandle]:
        return self._handles.get(name)

    def __getitem__(self, name: str) -> ResourceHandle:
        return self._handles[name]

    def __contains__(self, name: object) -> bool:
        return name in self._handles

    def __iter__(self) -> Iterator[ResourceHandle]:
        return iter(list(self._handles.values()))

    def __len__(self) -> int:
        return len(self._handles)

    @property
    def is_empty(self) -> bool:
        return not self._handles

    @property
    def names(self) -> list[str]:
        return list(self._handles)

    def of_kind(self, kind: str) -> list[ResourceHandle]:
        return [h for h in self._handles.values() if h.kind == kind]

    def id_of(self, name: str) -> Optional[str]:
        handle = self._handles.get(name)
        return handle.id if handle else None

    def to_dict(self) -> dict:
        return {
            'project_tag': self.project_tag,
            'handles': [h.to_dict() for h in self._handles.values()],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Topology':
        topology = cls(data['project_tag'])
        for handle_data in data.get('handles', []):
            topology.add(ResourceHandle.from_dict(handle_data))
        return topology

    def __repr__(self) -> str:
        return f"Topology({self.project_tag}, handles={len(self._handles)})"
