"""
Request classification for Kubernetes-style REST paths.

A request path is decoded into a ``ResourceDescriptor`` that names the API
group, version, resource, optional namespace/name and the verb the request
performs. Two path roots are recognized:

- ``api/{version}/...`` for the core group (no group segment)
- ``apis/{group}/{version}/...`` for named groups

The kind is recovered from the plural resource by dropping one trailing ``s``
and title-casing the rest. This is lossy: ``ingresses`` becomes
``Ingresse`` and ``networkpolicies`` becomes ``Networkpolicie``. Lookups that
matter (permissions, fan-out) use the plural resource, never the kind.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Mapping, Optional, Union
from urllib.parse import parse_qs

from .errors import MalformedPath

CORE_ROOT = "api"
GROUPED_ROOT = "apis"

CLUSTER_SCOPE = "cluster"
NAMESPACED_SCOPE = "namespaced"

# Subresources of the namespace object itself; everything else under
# namespaces/{ns}/ is a namespaced resource.
NAMESPACE_SUBRESOURCES = frozenset({"status", "finalize"})

_METHOD_VERBS = {
    "POST": "create",
    "PUT": "update",
    "PATCH": "patch",
}

Query = Union[str, Mapping[str, object], None]


@dataclass(frozen=True)
class ResourceDescriptor:
    group: str
    version: str
    kind: str
    resource: str
    verb: str
    namespace: Optional[str] = None
    name: Optional[str] = None
    subresource: Optional[str] = None
    is_watch: bool = False

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def scope(self) -> str:
        return NAMESPACED_SCOPE if self.namespace else CLUSTER_SCOPE

    @property
    def is_single_item(self) -> bool:
        return self.name is not None

    @property
    def is_list(self) -> bool:
        return self.verb in ("list", "watch") and not self.is_single_item

    @property
    def list_kind(self) -> str:
        return f"{self.kind}List"


def kind_for_resource(resource: str) -> str:
    """Derive a Kind from a plural resource name (``pods`` -> ``Pod``)."""
    singular = resource[:-1] if resource.endswith("s") else resource
    return singular.title()


def _split(path: str) -> List[str]:
    trimmed = path.strip("/")
    return trimmed.split("/") if trimmed else []


def _has_watch(query: Query) -> bool:
    if not query:
        return False
    if isinstance(query, str):
        return "watch" in parse_qs(query.lstrip("?"), keep_blank_values=True)
    return "watch" in query


def is_resource_path(path: str) -> bool:
    """
    Return True if the path addresses a resource (collection or item).

    Discovery documents (``/api``, ``/api/v1``, ``/apis/{group}/{version}``)
    and non-resource endpoints (``/version``, ``/healthz``) return False.
    """
    segments = _split(path)
    if not segments:
        return False
    if segments[0] == CORE_ROOT:
        return len(segments) >= 3
    if segments[0] == GROUPED_ROOT:
        return len(segments) >= 4
    return False


def _verb(method: str, is_watch: bool, has_name: bool) -> str:
    method = method.upper()
    if method in ("GET", "HEAD"):
        if is_watch:
            return "watch"
        return "get" if has_name else "list"
    if method == "DELETE":
        return "delete" if has_name else "deletecollection"
    return _METHOD_VERBS.get(method, method.lower())


def classify(path: str, query: Query = None, method: str = "GET") -> ResourceDescriptor:
    """
    Classify a request path and query into a ``ResourceDescriptor``.

    Raises:
        MalformedPath: If the path does not match any recognized shape.
    """
    segments = _split(path)
    if any(segment == "" for segment in segments):
        raise MalformedPath(path, "empty path segment")

    if len(segments) >= 3 and segments[0] == CORE_ROOT:
        group, version, rest = "", segments[1], segments[2:]
    elif len(segments) >= 4 and segments[0] == GROUPED_ROOT:
        group, version, rest = segments[1], segments[2], segments[3:]
    else:
        raise MalformedPath(path)

    namespace = None
    if rest[0] == "namespaces" and len(rest) >= 3:
        if len(rest) == 3 and rest[2] in NAMESPACE_SUBRESOURCES:
            # namespaces/{name}/status is the namespace object's own subresource
            pass
        else:
            namespace, rest = rest[1], rest[2:]

    if len(rest) > 3:
        raise MalformedPath(path, "too many path segments")

    resource = rest[0]
    name = rest[1] if len(rest) >= 2 else None
    subresource = rest[2] if len(rest) == 3 else None

    is_watch = _has_watch(query)
    return ResourceDescriptor(
        group=group,
        version=version,
        kind=kind_for_resource(resource),
        resource=resource,
        verb=_verb(method, is_watch, name is not None),
        namespace=namespace,
        name=name,
        subresource=subresource,
        is_watch=is_watch,
    )
