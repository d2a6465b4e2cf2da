"""
Shared fixtures for the gateway unit tests. No cluster is required: every
Kubernetes API is replaced with a MagicMock.
"""
from typing import Dict
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client import ApiException

from helpers import SERVICE_ACCOUNT
from rbac_gateway.rbac import Identity, PermissionStore, RBACWatcher


@pytest.fixture
def identity() -> Identity:
    return Identity(name=SERVICE_ACCOUNT)


@pytest.fixture
def store() -> PermissionStore:
    return PermissionStore()


@pytest.fixture
def roles() -> Dict[tuple, client.V1ClusterRole]:
    """Roles served by the mocked RBAC API, keyed by (namespace, name)."""
    return {}


@pytest.fixture
def rbac_api(roles) -> MagicMock:
    api = MagicMock()

    def read_cluster_role(name: str) -> client.V1ClusterRole:
        if (None, name) not in roles:
            raise ApiException(status=404, reason="Not Found")
        return roles[(None, name)]

    def read_namespaced_role(name: str, namespace: str) -> client.V1ClusterRole:
        if (namespace, name) not in roles:
            raise ApiException(status=404, reason="Not Found")
        return roles[(namespace, name)]

    api.read_cluster_role = MagicMock(side_effect=read_cluster_role)
    api.read_namespaced_role = MagicMock(side_effect=read_namespaced_role)
    return api


@pytest.fixture
def watcher(identity, store, rbac_api) -> RBACWatcher:
    return RBACWatcher(identity, store=store, rbac_api=rbac_api)
