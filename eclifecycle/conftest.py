"""
Shared test support: an in-memory stand-in for ClusterClient.

Create is atomic, updates honor resourceVersion, and reactors can inject
behavior per verb and kind, similar to client-go's fake clientset.
"""

import copy
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .kube.kinds import ResourceKind
from .kube.client import object_key
from .errors.errors import ResourceNotFoundError, ResourceExistsError, ResourceConflictError


@dataclass
class FakeAction:
    """One recorded call against the fake."""
    verb: str
    kind: ResourceKind
    namespace: Optional[str] = None
    name: Optional[str] = None
    obj: Optional[Dict[str, Any]] = None
    label_selector: Optional[Dict[str, str]] = field(default=None)


Reactor = Callable[[FakeAction], Optional[Any]]


def matches_labels(obj: Dict[str, Any], selector: Optional[Dict[str, str]]) -> bool:
    if not selector:
        return True
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return all(labels.get(key) == value for key, value in selector.items())


class FakeClusterClient:
    """ClusterClient implementation backed by a dictionary."""

    def __init__(self):
        self._objects: Dict[Tuple[str, Optional[str], str], Dict[str, Any]] = {}
        self._versions = itertools.count(1)
        self._reactors: List[Tuple[str, str, Reactor]] = []
        self.actions: List[FakeAction] = []

    def add_reactor(self, verb: str, kind: str, reactor: Reactor) -> None:
        """
        Register a reactor for a verb and kind name ("*" matches any).

        Reactors run before the verb, newest first. A reactor may mutate
        action.obj, raise, or return a non-None value that becomes the result.
        """
        self._reactors.insert(0, (verb, kind, reactor))

    def seed(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Insert an object directly, status included."""
        obj = copy.deepcopy(obj)
        namespace, name = object_key(obj)
        self._stamp(obj, new=True)
        self._objects[self._key(kind, namespace, name)] = obj
        return copy.deepcopy(obj)

    def objects(self, kind: ResourceKind, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(obj) for (kind_name, ns, _), obj in sorted(self._objects.items(), key=lambda i: str(i[0]))
            if kind_name == kind.kind and (namespace is None or ns == namespace)
        ]

    def count(self, verb: str, kind: ResourceKind) -> int:
        return sum(1 for action in self.actions if action.verb == verb and action.kind == kind)

    @staticmethod
    def _key(kind: ResourceKind, namespace: Optional[str], name: str):
        return kind.kind, namespace if kind.namespaced else None, name

    def _stamp(self, obj: Dict[str, Any], new: bool = False) -> None:
        metadata = obj.setdefault("metadata", {})
        metadata["resourceVersion"] = str(next(self._versions))
        if new:
            metadata.setdefault("creationTimestamp", datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"))

    def _react(self, action: FakeAction):
        self.actions.append(action)
        for verb, kind, reactor in self._reactors:
            if verb in ("*", action.verb) and kind in ("*", action.kind.kind):
                result = reactor(action)
                if result is not None:
                    return result
        return None

    async def get(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        result = self._react(FakeAction("get", kind, namespace, name))
        if result is not None:
            return result
        key = self._key(kind, namespace, name)
        if key not in self._objects:
            raise ResourceNotFoundError(kind.kind, name, namespace)
        return copy.deepcopy(self._objects[key])

    async def list(self, kind: ResourceKind, namespace: Optional[str] = None,
                   label_selector: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        result = self._react(FakeAction("list", kind, namespace, label_selector=label_selector))
        if result is not None:
            return result
        return [obj for obj in self.objects(kind, namespace) if matches_labels(obj, label_selector)]

    async def create(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        obj = copy.deepcopy(obj)
        namespace, name = object_key(obj)
        result = self._react(FakeAction("create", kind, namespace, name, obj))
        if result is not None:
            return result
        key = self._key(kind, namespace, name)
        if key in self._objects:
            raise ResourceExistsError(kind.kind, name, namespace)
        self._stamp(obj, new=True)
        self._objects[key] = obj
        return copy.deepcopy(obj)

    async def update(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Replace spec and metadata; the stored status is kept."""
        obj = copy.deepcopy(obj)
        namespace, name = object_key(obj)
        result = self._react(FakeAction("update", kind, namespace, name, obj))
        if result is not None:
            return result
        current = self._existing(kind, namespace, name, obj)
        if "status" in current:
            obj["status"] = current["status"]
        else:
            obj.pop("status", None)
        self._stamp(obj)
        self._objects[self._key(kind, namespace, name)] = obj
        return copy.deepcopy(obj)

    async def update_status(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        obj = copy.deepcopy(obj)
        namespace, name = object_key(obj)
        result = self._react(FakeAction("update_status", kind, namespace, name, obj))
        if result is not None:
            return result
        current = copy.deepcopy(self._existing(kind, namespace, name, obj))
        current["status"] = obj.get("status")
        self._stamp(current)
        self._objects[self._key(kind, namespace, name)] = current
        return copy.deepcopy(current)

    async def delete(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> None:
        result = self._react(FakeAction("delete", kind, namespace, name))
        if result is not None:
            return
        key = self._key(kind, namespace, name)
        if key not in self._objects:
            raise ResourceNotFoundError(kind.kind, name, namespace)
        del self._objects[key]

    def _existing(self, kind: ResourceKind, namespace: Optional[str], name: str, obj: Dict[str, Any]):
        key = self._key(kind, namespace, name)
        if key not in self._objects:
            raise ResourceNotFoundError(kind.kind, name, namespace)
        current = self._objects[key]
        version = (obj.get("metadata") or {}).get("resourceVersion")
        if version and version != current["metadata"]["resourceVersion"]:
            raise ResourceConflictError(kind.kind, name, namespace)
        return current
