"""Helpers for building cluster-looking responses out of namespace responses."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..errors import MalformedQuery
from ..request_info import ResourceDescriptor

# Client query parameters forwarded to every per-namespace call, mapped to
# the keyword names the kubernetes dynamic client expects.
LIST_OPTIONS = {
    "labelSelector": "label_selector",
    "fieldSelector": "field_selector",
    "resourceVersion": "resource_version",
    "timeoutSeconds": "timeout_seconds",
}
WATCH_OPTIONS = {
    "labelSelector": "label_selector",
    "fieldSelector": "field_selector",
    "resourceVersion": "resource_version",
    "timeoutSeconds": "timeout_seconds",
    "allowWatchBookmarks": "allow_watch_bookmarks",
}


def translate_options(query: Optional[Mapping[str, Any]], mapping: Mapping[str, str]) -> Dict[str, Any]:
    """
    Pick the supported query parameters and rename them for the dynamic client.

    Raises:
        MalformedQuery: If a numeric parameter is not a non-negative integer.
    """
    options: Dict[str, Any] = {}
    for param, keyword in mapping.items():
        if not query or param not in query:
            continue
        value = query[param]
        if keyword == "timeout_seconds":
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise MalformedQuery(param, value)
            if value < 0:
                raise MalformedQuery(param, value)
        elif keyword == "allow_watch_bookmarks":
            value = str(value).lower() in ("1", "true")
        options[keyword] = value
    return options


def pick_resource_version(versions: List[str]) -> str:
    """
    Choose the resourceVersion for a merged list.

    Resource versions are etcd revisions in practice, so when every
    namespace returned an integer the highest one wins. Otherwise the value
    from the last namespace queried is kept.
    """
    if not versions:
        return ""
    try:
        return str(max(int(version) for version in versions))
    except ValueError:
        return versions[-1]


def merge_resource_lists(
    descriptor: ResourceDescriptor,
    partials: Iterable[Tuple[str, Optional[Dict[str, Any]]]],
) -> Dict[str, Any]:
    """
    Concatenate per-namespace lists into one ``<Kind>List`` envelope.

    ``partials`` yields ``(namespace, list_body)`` in namespace order; a
    ``None`` body marks a namespace whose call failed and is skipped.
    """
    items: List[Dict[str, Any]] = []
    versions: List[str] = []
    for _, body in partials:
        if body is None:
            continue
        items.extend(body.get("items") or [])
        version = (body.get("metadata") or {}).get("resourceVersion")
        if version:
            versions.append(version)

    return {
        "apiVersion": descriptor.api_version,
        "kind": descriptor.list_kind,
        "metadata": {"resourceVersion": pick_resource_version(versions)},
        "items": items,
    }
