"""
Binding-cache permission resolver.

Watches ClusterRoleBindings and RoleBindings through a private kopf registry
and keeps a ``PermissionStore`` in sync with the grants those bindings hand
to the tracked identity. The kopf operator runs standalone and clusterwide in
its own thread and event loop; request threads only ever read the store.
"""
import asyncio
import copy
import logging
import threading
from typing import Any, Dict, List, Optional

import kopf
from kubernetes import client
from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError

from ..errors import UpstreamUnavailable
from .helpers import (
    CLUSTER_ROLE_BINDINGS,
    RBAC_GROUP,
    RBAC_VERSION,
    ROLE_BINDINGS,
    binding_has_subject,
    binding_key,
    resolve_binding_grant,
)
from .store import Identity, PermissionStore

logger = logging.getLogger(__name__)


class RBACWatcher:
    """Tracks an identity's permissions from live binding notifications."""

    def __init__(
        self,
        identity: Identity,
        store: Optional[PermissionStore] = None,
        rbac_api: Optional[client.RbacAuthorizationV1Api] = None,
    ) -> None:
        self.identity = identity
        self.store = store if store is not None else PermissionStore()
        self.rbac_api = rbac_api if rbac_api is not None else client.RbacAuthorizationV1Api()
        self.registry = kopf.OperatorRegistry()
        # Last seen version of every binding, so updates carry their old state.
        self._seen: Dict[tuple, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._initialized = False

    def initialize(self) -> None:
        """
        Verify the binding APIs are reachable and register the kopf handlers.

        Raises:
            UpstreamUnavailable: If the API server cannot be reached.
        """
        try:
            self.rbac_api.list_cluster_role_binding(limit=1)
            self.rbac_api.list_role_binding_for_all_namespaces(limit=1)
        except (ApiException, HTTPError) as e:
            raise UpstreamUnavailable(f"Cannot list RBAC bindings: {e}") from e

        kopf.on.startup(registry=self.registry)(self._configure)
        kopf.on.login(registry=self.registry)(self._login)
        kopf.on.event(
            RBAC_GROUP, RBAC_VERSION, CLUSTER_ROLE_BINDINGS, registry=self.registry
        )(self._on_cluster_role_binding_event)
        kopf.on.event(
            RBAC_GROUP, RBAC_VERSION, ROLE_BINDINGS, registry=self.registry
        )(self._on_role_binding_event)
        self._initialized = True
        logger.info(f"Watching RBAC bindings for identity '{self.identity}'")

    def start(
        self,
        stop_flag: Optional[threading.Event] = None,
        ready_flag: Optional[threading.Event] = None,
    ) -> None:
        """Deliver binding notifications. Blocks until ``stop_flag`` is set."""
        if not self._initialized:
            raise RuntimeError("RBACWatcher.initialize() must be called before start()")
        asyncio.run(
            kopf.operator(
                registry=self.registry,
                standalone=True,
                clusterwide=True,
                stop_flag=stop_flag,
                ready_flag=ready_flag,
            )
        )

    def start_in_background(
        self,
        stop_flag: threading.Event,
        ready_flag: Optional[threading.Event] = None,
    ) -> threading.Thread:
        thread = threading.Thread(
            target=self.start,
            kwargs={"stop_flag": stop_flag, "ready_flag": ready_flag},
            name="rbac-watcher",
            daemon=True,
        )
        thread.start()
        return thread

    @staticmethod
    def _configure(settings: kopf.OperatorSettings, **kwargs: Any) -> None:
        # Bindings are only observed; never post k8s events about them.
        settings.posting.enabled = False
        settings.watching.server_timeout = 600

    @staticmethod
    def _login(**kwargs: Any) -> Optional[kopf.ConnectionInfo]:
        return kopf.login_via_client(**kwargs)

    def _on_cluster_role_binding_event(self, event: Dict[str, Any], **kwargs: Any) -> None:
        self.handle_event(CLUSTER_ROLE_BINDINGS, event)

    def _on_role_binding_event(self, event: Dict[str, Any], **kwargs: Any) -> None:
        self.handle_event(ROLE_BINDINGS, event)

    def handle_event(self, kind: str, event: Dict[str, Any]) -> None:
        """
        Translate a raw watch event into add/update/delete.

        kopf reports objects from the initial listing with a ``None`` type;
        those are treated as additions.
        """
        event_type = event.get("type")
        binding = copy.deepcopy(dict(event.get("object") or {}))
        key = binding_key(kind, binding)

        with self._lock:
            old = self._seen.get(key)
            if event_type == "DELETED":
                self._seen.pop(key, None)
                self.on_delete(kind, old or binding)
                return
            self._seen[key] = binding
            if old is None:
                self.on_add(kind, binding)
            else:
                self.on_update(kind, old, binding)

    def on_add(self, kind: str, binding: Dict[str, Any]) -> None:
        if binding_has_subject(binding, self.identity):
            self._grant(kind, binding)
            self._log_permissions(kind, "add")

    def on_update(self, kind: str, old: Dict[str, Any], new: Dict[str, Any]) -> None:
        had_identity = binding_has_subject(old, self.identity)
        has_identity = binding_has_subject(new, self.identity)

        # roleRef is immutable, so only subject membership can change.
        if had_identity and not has_identity:
            self._revoke(kind, old)
            self._log_permissions(kind, "update")
        elif has_identity and not had_identity:
            self._grant(kind, new)
            self._log_permissions(kind, "update")

    def on_delete(self, kind: str, binding: Dict[str, Any]) -> None:
        if binding_has_subject(binding, self.identity):
            self._revoke(kind, binding)
            self._log_permissions(kind, "delete")

    def _grant(self, kind: str, binding: Dict[str, Any]) -> None:
        namespaced = kind == ROLE_BINDINGS
        grant = resolve_binding_grant(self.rbac_api, binding, namespaced)
        source = binding_key(kind, binding)
        if namespaced:
            self.store.add_namespace_grant(binding["metadata"]["namespace"], grant, source)
        else:
            self.store.add_cluster_grant(grant, source)

    def _revoke(self, kind: str, binding: Dict[str, Any]) -> None:
        # Recompute what the binding granted; roles are not watched, so an
        # edited role is seen as it is now, not as it was when bound.
        namespaced = kind == ROLE_BINDINGS
        grant = resolve_binding_grant(self.rbac_api, binding, namespaced)
        source = binding_key(kind, binding)
        if namespaced:
            self.store.remove_namespace_grant(binding["metadata"]["namespace"], grant, source)
        else:
            self.store.remove_cluster_grant(grant, source)

    def _log_permissions(self, kind: str, action: str) -> None:
        if kind == ROLE_BINDINGS:
            logger.info(f"Namespace permissions after {action} -- {self.store.namespace_permissions()}")
        else:
            logger.info(f"Cluster permissions after {action} -- {self.store.cluster_permissions()}")

    def can_cluster_perform(self, verb: str, group: str, version: str, resource: str) -> bool:
        # Grants are keyed by resource only; group and version are not tracked.
        return self.store.cluster_allows(resource, verb)

    def permitted_namespaces(self, verb: str, group: str, version: str, resource: str) -> List[str]:
        return self.store.permitted_namespaces(resource, verb)
