"""Helpers for turning RBAC roles and bindings into resolved grants."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from kubernetes import client
from kubernetes.client import ApiException

from ..errors import PermissionResolutionError
from .store import Identity, ResourceGrant

logger = logging.getLogger(__name__)

RBAC_GROUP = "rbac.authorization.k8s.io"
RBAC_VERSION = "v1"
CLUSTER_ROLE_BINDINGS = "clusterrolebindings"
ROLE_BINDINGS = "rolebindings"


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def grant_from_rules(rules: Optional[Iterable[Any]]) -> ResourceGrant:
    """
    Union every rule of a role into one grant.

    Each resource listed in a rule receives every verb listed in that rule.
    Rules may be ``V1PolicyRule`` models or plain dicts.
    """
    grant: ResourceGrant = {}
    for rule in rules or []:
        verbs = set(_field(rule, "verbs") or [])
        if not verbs:
            continue
        for resource in _field(rule, "resources") or []:
            grant.setdefault(resource, set()).update(verbs)
    return grant


def binding_has_subject(binding: Optional[Dict[str, Any]], identity: Identity) -> bool:
    """Return True if the identity is one of the binding's subjects."""
    if not binding:
        return False
    return any(identity.matches(subject) for subject in binding.get("subjects") or [])


def binding_key(kind: str, binding: Dict[str, Any]) -> tuple:
    meta = binding.get("metadata", {})
    return (kind, meta.get("namespace"), meta.get("name"))


def read_role_rules(
    rbac_api: client.RbacAuthorizationV1Api,
    role_ref: Dict[str, Any],
    namespace: Optional[str] = None,
) -> list:
    """
    Fetch the rules of the role a binding references.

    ``ClusterRole`` references are read cluster-wide, including when they come
    from a namespaced ``RoleBinding``; ``Role`` references are read from the
    binding's namespace.

    Raises:
        PermissionResolutionError: If the role cannot be read.
    """
    name = role_ref.get("name")
    kind = role_ref.get("kind", "Role" if namespace else "ClusterRole")
    try:
        if kind == "ClusterRole" or namespace is None:
            role = rbac_api.read_cluster_role(name=name)
        else:
            role = rbac_api.read_namespaced_role(name=name, namespace=namespace)
    except ApiException as e:
        raise PermissionResolutionError(
            f"Could not read {kind} '{name}' (namespace={namespace}): {e.status} {e.reason}"
        ) from e
    return list(role.rules or [])


def resolve_binding_grant(
    rbac_api: client.RbacAuthorizationV1Api,
    binding: Dict[str, Any],
    namespaced: bool,
) -> ResourceGrant:
    """
    Resolve the grant a binding hands out by dereferencing its role.

    Lookup failures are logged and treated as an empty grant.
    """
    meta = binding.get("metadata", {})
    namespace = meta.get("namespace") if namespaced else None
    role_ref = binding.get("roleRef") or {}
    try:
        rules = read_role_rules(rbac_api, role_ref, namespace)
    except PermissionResolutionError as e:
        logger.warning(f"Binding '{meta.get('name')}' contributes no permissions: {e}")
        return {}

    grant = grant_from_rules(rules)
    for resource, verbs in grant.items():
        logger.debug(
            f"{role_ref.get('kind')} '{role_ref.get('name')}' sets resource "
            f"'{resource}' with verbs '{','.join(sorted(verbs))}'"
        )
    return grant
