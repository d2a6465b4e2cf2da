"""Thread-safe index of what the tracked identity may do, and where."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional, Set

WILDCARD = "*"

# A resolved grant: plural resource name -> verbs allowed on it.
ResourceGrant = Dict[str, Set[str]]

# Internal layout: resource -> verb -> keys of the bindings contributing it.
_GrantIndex = Dict[str, Dict[str, Set[Hashable]]]


@dataclass(frozen=True)
class Identity:
    """The service account whose permissions are tracked."""

    name: str
    namespace: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "Identity":
        """
        Parse an identity from ``name``, ``namespace:name`` or
        ``system:serviceaccount:namespace:name``.
        """
        parts = value.split(":")
        if len(parts) == 4 and parts[:2] == ["system", "serviceaccount"]:
            return cls(name=parts[3], namespace=parts[2])
        if len(parts) == 2:
            return cls(name=parts[1], namespace=parts[0])
        if len(parts) == 1 and value:
            return cls(name=value)
        raise ValueError(f"Invalid service account identity: '{value}'")

    def matches(self, subject: Dict[str, object]) -> bool:
        """Return True if a binding subject refers to this identity."""
        if subject.get("kind") != "ServiceAccount" or subject.get("name") != self.name:
            return False
        return self.namespace is None or subject.get("namespace") == self.namespace

    def __str__(self) -> str:
        if self.namespace:
            return f"system:serviceaccount:{self.namespace}:{self.name}"
        return self.name


def _allows(index: Optional[_GrantIndex], resource: str, verb: str) -> bool:
    if not index:
        return False
    for res in (resource, WILDCARD):
        verbs = index.get(res)
        if verbs and (verb in verbs or WILDCARD in verbs):
            return True
    return False


def _flatten(index: _GrantIndex) -> ResourceGrant:
    return {resource: set(verbs) for resource, verbs in index.items()}


class PermissionStore:
    """
    Cluster and per-namespace grants for a single identity.

    All access goes through an ``RLock``: the binding watcher writes from its
    notification thread while request threads read concurrently.

    By default grants are a flat union, as bindings have always been merged:
    withdrawing a binding removes every (resource, verb) pair it grants even
    when another binding still grants the same pair. With
    ``track_provenance=True`` each pair remembers the bindings contributing
    it and disappears only when the last one is withdrawn.
    """

    def __init__(self, track_provenance: bool = False) -> None:
        self.track_provenance = track_provenance
        self._lock = threading.RLock()
        self._cluster: _GrantIndex = {}
        self._namespaces: Dict[str, _GrantIndex] = {}

    def _add(self, index: _GrantIndex, grant: ResourceGrant, source: Hashable) -> None:
        for resource, verbs in grant.items():
            if not verbs:
                continue
            entry = index.setdefault(resource, {})
            for verb in verbs:
                entry.setdefault(verb, set()).add(source)

    def _remove(self, index: _GrantIndex, grant: ResourceGrant, source: Hashable) -> None:
        for resource, verbs in grant.items():
            entry = index.get(resource)
            if entry is None:
                continue
            for verb in verbs:
                if verb not in entry:
                    continue
                if self.track_provenance:
                    entry[verb].discard(source)
                    if entry[verb]:
                        continue
                del entry[verb]
            if not entry:
                del index[resource]

    def add_cluster_grant(self, grant: ResourceGrant, source: Hashable = None) -> None:
        with self._lock:
            self._add(self._cluster, grant, source)

    def remove_cluster_grant(self, grant: ResourceGrant, source: Hashable = None) -> None:
        with self._lock:
            self._remove(self._cluster, grant, source)

    def add_namespace_grant(
        self, namespace: str, grant: ResourceGrant, source: Hashable = None
    ) -> None:
        with self._lock:
            index = self._namespaces.setdefault(namespace, {})
            self._add(index, grant, source)
            if not index:
                del self._namespaces[namespace]

    def remove_namespace_grant(
        self, namespace: str, grant: ResourceGrant, source: Hashable = None
    ) -> None:
        with self._lock:
            index = self._namespaces.get(namespace)
            if index is None:
                return
            self._remove(index, grant, source)
            if not index:
                del self._namespaces[namespace]

    def cluster_allows(self, resource: str, verb: str) -> bool:
        with self._lock:
            return _allows(self._cluster, resource, verb)

    def namespace_allows(self, namespace: str, resource: str, verb: str) -> bool:
        with self._lock:
            return _allows(self._namespaces.get(namespace), resource, verb)

    def permitted_namespaces(self, resource: str, verb: str) -> List[str]:
        """Return the sorted namespaces where ``verb`` is granted on ``resource``."""
        with self._lock:
            return sorted(
                namespace
                for namespace, index in self._namespaces.items()
                if _allows(index, resource, verb)
            )

    def cluster_permissions(self) -> ResourceGrant:
        with self._lock:
            return _flatten(self._cluster)

    def namespace_permissions(self) -> Dict[str, ResourceGrant]:
        with self._lock:
            return {ns: _flatten(index) for ns, index in self._namespaces.items()}
