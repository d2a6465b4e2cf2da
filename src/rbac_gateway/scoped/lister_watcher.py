"""
Cluster-scope list and watch for identities with only namespaced access.

When the tracked identity cannot list or watch a resource cluster-wide, a
cluster-scope request is answered by fanning out to every namespace the
identity may read and splicing the partial results into one response.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol

from kubernetes import client, watch
from kubernetes.client import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError, ResourceNotUniqueError
from urllib3.exceptions import HTTPError

from ..errors import UpstreamUnavailable
from ..request_info import ResourceDescriptor
from .helpers import LIST_OPTIONS, WATCH_OPTIONS, merge_resource_lists, translate_options
from .watcher import ScopedWatcher

logger = logging.getLogger(__name__)

# Extra seconds a watch connection may stay silent past its server-side
# timeout before the client gives up on it.
WATCH_READ_GRACE = 30


class PermissionResolver(Protocol):
    def can_cluster_perform(self, verb: str, group: str, version: str, resource: str) -> bool:
        ...

    def permitted_namespaces(self, verb: str, group: str, version: str, resource: str) -> List[str]:
        ...


class NamespaceWatch:
    """
    One namespace's watch stream that another thread can cut off.

    ``kubernetes.watch.Watch.stop`` is only noticed once the next event
    arrives. ``close()`` also shuts down the open upstream response, which
    wakes a reader blocked on a silent connection.
    """

    def __init__(
        self,
        dynamic: DynamicClient,
        resource: Any,
        namespace: str,
        options: Dict[str, Any],
        request_timeout: Any = None,
    ) -> None:
        self.dynamic = dynamic
        self.resource = resource
        self.namespace = namespace
        self.options = options
        self.request_timeout = request_timeout
        self.watcher = watch.Watch()
        self._lock = threading.Lock()
        self._response = None
        self._closed = False

    def _open(self, **kwargs: Any) -> Any:
        response = self.dynamic.get(self.resource, **kwargs)
        with self._lock:
            self._response = response
            closed = self._closed
        if closed:
            # Closed while connecting; Watch.stream resets its stop flag on entry.
            self.watcher.stop()
            response.shutdown()
        return response

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        for event in self.watcher.stream(
            self._open,
            namespace=self.namespace,
            serialize=False,
            _request_timeout=self.request_timeout,
            **self.options,
        ):
            yield {"type": event["type"], "object": event["raw_object"]}

    def close(self) -> None:
        self.watcher.stop()
        with self._lock:
            self._closed = True
            response = self._response
        if response is not None:
            response.shutdown()


class ScopedListerWatcher:
    """Decides between direct forwarding and namespace fan-out."""

    def __init__(
        self,
        resolver: PermissionResolver,
        dynamic_client: Optional[DynamicClient] = None,
        max_workers: int = 8,
        request_timeout: Optional[float] = 30,
        watch_timeout_seconds: Optional[int] = 300,
    ) -> None:
        self.resolver = resolver
        self._dynamic = dynamic_client
        self.max_workers = max_workers
        self.request_timeout = request_timeout
        self.watch_timeout_seconds = watch_timeout_seconds

    @property
    def dynamic(self) -> DynamicClient:
        """
        The discovery-backed client, built on first use.

        Raises:
            UpstreamUnavailable: If discovery against the API server fails.
        """
        if self._dynamic is None:
            try:
                self._dynamic = DynamicClient(client.ApiClient())
            except (ApiException, HTTPError) as e:
                raise UpstreamUnavailable(f"Cannot build dynamic client: {e}") from e
        return self._dynamic

    def resolve(self, descriptor: ResourceDescriptor) -> bool:
        """
        Return True if the request can be forwarded to the API server as is.

        Single-item and namespaced requests are always direct; the API server
        authorizes those natively. Cluster-scope list/watch requests are direct
        only when the identity holds the verb cluster-wide.
        """
        if not descriptor.is_list or descriptor.namespace:
            return True
        if self.resolver.can_cluster_perform(
            descriptor.verb, descriptor.group, descriptor.version, descriptor.resource
        ):
            return True
        if self._find_resource(descriptor) is None:
            return True
        return False

    def _find_resource(self, descriptor: ResourceDescriptor) -> Any:
        try:
            return self.dynamic.resources.get(
                api_version=descriptor.api_version, name=descriptor.resource
            )
        except (ResourceNotFoundError, ResourceNotUniqueError) as e:
            logger.info(
                f"Resource '{descriptor.resource}' in '{descriptor.api_version}' "
                f"cannot be fanned out ({e}); forwarding directly"
            )
            return None
        except (ApiException, HTTPError) as e:
            raise UpstreamUnavailable(
                f"Discovery of '{descriptor.resource}' in '{descriptor.api_version}' failed: {e}"
            ) from e

    def _permitted_namespaces(self, descriptor: ResourceDescriptor, verb: str) -> List[str]:
        return self.resolver.permitted_namespaces(
            verb, descriptor.group, descriptor.version, descriptor.resource
        )

    def _list_namespace(
        self, resource: Any, namespace: str, options: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        try:
            result = self.dynamic.get(
                resource,
                namespace=namespace,
                _request_timeout=self.request_timeout,
                **options,
            )
        except (ApiException, HTTPError) as e:
            logger.error(
                f"encountered an error getting {resource.kind}List for namespace '{namespace}': {e}"
            )
            return None
        return result.to_dict()

    def list(
        self, descriptor: ResourceDescriptor, query: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        """Build a cluster-looking list from every permitted namespace."""
        options = translate_options(query, LIST_OPTIONS)
        namespaces = self._permitted_namespaces(descriptor, "list")
        resource = self._find_resource(descriptor)
        logger.info(f"Synthesizing {descriptor.list_kind} from namespaces {namespaces}")

        if resource is None or not namespaces:
            return merge_resource_lists(descriptor, [])

        workers = max(1, min(self.max_workers, len(namespaces)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="list-fanout") as pool:
            results = pool.map(
                lambda ns: self._list_namespace(resource, ns, options), namespaces
            )
            return merge_resource_lists(descriptor, zip(namespaces, results))

    def _watch_request_timeout(self, options: Dict[str, Any]) -> Any:
        # (connect, read): a silent connection outliving the server-side
        # timeout is treated as dead.
        timeout_seconds = options.get("timeout_seconds")
        if not timeout_seconds:
            return self.request_timeout
        return (self.request_timeout, timeout_seconds + WATCH_READ_GRACE)

    def watch(
        self, descriptor: ResourceDescriptor, query: Optional[Mapping[str, Any]] = None
    ) -> ScopedWatcher:
        """Merge one watch per permitted namespace into a single stream."""
        options = translate_options(query, WATCH_OPTIONS)
        if "timeout_seconds" not in options and self.watch_timeout_seconds:
            options["timeout_seconds"] = self.watch_timeout_seconds
        namespaces = self._permitted_namespaces(descriptor, "watch")
        resource = self._find_resource(descriptor)
        logger.info(f"Merging watches on {descriptor.resource} from namespaces {namespaces}")

        if resource is None:
            return ScopedWatcher([])

        request_timeout = self._watch_request_timeout(options)
        sources = [
            NamespaceWatch(self.dynamic, resource, ns, options, request_timeout)
            for ns in namespaces
        ]
        return ScopedWatcher(sources, cancel=[source.close for source in sources])
