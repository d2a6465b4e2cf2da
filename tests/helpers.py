import json
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

import pytest
from kubernetes import client

POLL_INTERVAL = 0.05

SERVICE_ACCOUNT = "rbac-sa"

T = TypeVar("T")


def wait_for(
    callable: Callable[[], T],
    timeout: float = 5,
    interval: float = POLL_INTERVAL,
    failure_message: str = "Condition not met within timeout",
) -> T:
    """
    Poll a callable until it returns a truthy value or the timeout expires.

    Returns:
        The truthy value returned by the callable.
    """
    start_time = time.time()
    while time.time() - start_time < timeout:
        result = callable()
        if result:
            return result
        time.sleep(interval)
    pytest.fail(failure_message)


def make_role(rules: List[Dict[str, Any]]) -> client.V1ClusterRole:
    return client.V1ClusterRole(
        rules=[
            client.V1PolicyRule(
                api_groups=rule.get("apiGroups", [""]),
                resources=rule.get("resources"),
                verbs=rule["verbs"],
            )
            for rule in rules
        ]
    )


def make_binding(
    name: str,
    role: str,
    namespace: Optional[str] = None,
    subjects: Optional[List[Dict[str, Any]]] = None,
    role_kind: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a ClusterRoleBinding (no namespace) or RoleBinding manifest."""
    if subjects is None:
        subjects = [{"kind": "ServiceAccount", "name": SERVICE_ACCOUNT, "namespace": "default"}]
    metadata: Dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding" if namespace else "ClusterRoleBinding",
        "metadata": metadata,
        "subjects": subjects,
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": role_kind or ("Role" if namespace else "ClusterRole"),
            "name": role,
        },
    }


class WatchResponse:
    """
    Stands in for the streamed urllib3 response of a watch request.

    With ``hold_open`` the stream goes silent after its events, the way an
    idle watch connection does, until ``shutdown()`` is called.
    """

    def __init__(self, events: List[Dict[str, Any]], hold_open: bool = False) -> None:
        self.lines = [json.dumps(event).encode() + b"\n" for event in events]
        self.hold_open = hold_open
        self.released = threading.Event()
        self.shutdown_calls = 0

    def stream(self, amt: Any = None, decode_content: Any = None) -> Iterator[bytes]:
        for line in self.lines:
            yield line
        if self.hold_open:
            self.released.wait(timeout=10)

    read_chunked = stream

    def shutdown(self) -> None:
        self.shutdown_calls += 1
        self.released.set()

    def close(self) -> None:
        pass

    def release_conn(self) -> None:
        pass


def pod_event(event_type: str, name: str, namespace: str, resource_version: str = "1") -> Dict[str, Any]:
    return {
        "type": event_type,
        "object": {
            "kind": "Pod",
            "apiVersion": "v1",
            "metadata": {"name": name, "namespace": namespace, "resourceVersion": resource_version},
        },
    }
