from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from urllib3.exceptions import MaxRetryError

from helpers import WatchResponse, make_binding, make_role, pod_event, wait_for
from rbac_gateway.errors import MalformedQuery, UpstreamUnavailable
from rbac_gateway.rbac.helpers import CLUSTER_ROLE_BINDINGS
from rbac_gateway.request_info import classify
from rbac_gateway.scoped import NamespaceWatch, ScopedListerWatcher
from rbac_gateway.scoped.helpers import LIST_OPTIONS, WATCH_OPTIONS, pick_resource_version, translate_options
from rbac_gateway.scoped.lister_watcher import WATCH_READ_GRACE

PODS = classify("api/v1/pods")
WATCH_PODS = classify("api/v1/pods", "watch=true")


def _pod_list(namespace, names, resource_version):
    return {
        "apiVersion": "v1",
        "kind": "PodList",
        "metadata": {"resourceVersion": resource_version},
        "items": [{"metadata": {"name": name, "namespace": namespace}} for name in names],
    }


@pytest.fixture
def resolver():
    resolver = MagicMock()
    resolver.can_cluster_perform.return_value = False
    resolver.permitted_namespaces.return_value = ["a", "b"]
    return resolver


@pytest.fixture
def dynamic():
    dynamic = MagicMock()
    dynamic.resources.get.return_value = SimpleNamespace(kind="Pod", name="pods")
    return dynamic


@pytest.fixture
def access(resolver, dynamic):
    return ScopedListerWatcher(resolver, dynamic_client=dynamic, request_timeout=5)


@pytest.mark.parametrize(
    "path,query",
    [
        ("api/v1/namespaces/a/pods", None),
        ("api/v1/pods/p1", None),
        ("api/v1/namespaces/a/pods", "watch=true"),
    ],
)
def test_namespaced_and_single_item_requests_are_direct(access, resolver, path, query):
    assert access.resolve(classify(path, query))
    resolver.can_cluster_perform.assert_not_called()


def test_cluster_list_is_direct_when_allowed_cluster_wide(access, resolver):
    resolver.can_cluster_perform.return_value = True
    assert access.resolve(PODS)
    resolver.can_cluster_perform.assert_called_once_with("list", "", "v1", "pods")


def test_cluster_list_is_synthesized_without_cluster_grant(access):
    assert not access.resolve(PODS)
    assert not access.resolve(WATCH_PODS)


def test_unknown_resource_is_forwarded(access, dynamic):
    dynamic.resources.get.side_effect = ResourceNotFoundError("no such resource")
    assert access.resolve(classify("apis/example.com/v1/widgets"))


def test_wildcard_cluster_binding_makes_every_list_direct(watcher, roles, dynamic):
    roles[(None, "admin")] = make_role([{"resources": ["*"], "verbs": ["*"]}])
    watcher.handle_event(CLUSTER_ROLE_BINDINGS, {"type": None, "object": make_binding("crb", "admin")})
    access = ScopedListerWatcher(watcher, dynamic_client=dynamic)

    assert access.resolve(PODS)
    assert access.resolve(classify("apis/apps/v1/deployments", "watch=1"))


def test_list_merges_permitted_namespaces(access, dynamic):
    bodies = {
        "a": _pod_list("a", ["p1", "p2"], "100"),
        "b": _pod_list("b", ["p3"], "250"),
    }
    dynamic.get.side_effect = lambda resource, namespace, **kwargs: MagicMock(
        to_dict=MagicMock(return_value=bodies[namespace])
    )

    result = access.list(PODS, {"labelSelector": "app=web"})

    assert result["apiVersion"] == "v1"
    assert result["kind"] == "PodList"
    assert result["metadata"]["resourceVersion"] == "250"
    assert {item["metadata"]["name"] for item in result["items"]} == {"p1", "p2", "p3"}
    for call in dynamic.get.call_args_list:
        assert call.kwargs["label_selector"] == "app=web"
        assert call.kwargs["_request_timeout"] == 5


def test_list_skips_failing_namespace(access, dynamic, resolver):
    resolver.permitted_namespaces.return_value = ["a", "b", "c"]

    def get(resource, namespace, **kwargs):
        if namespace == "b":
            raise ApiException(status=403, reason="Forbidden")
        return MagicMock(to_dict=MagicMock(return_value=_pod_list(namespace, [f"{namespace}-pod"], "7")))

    dynamic.get.side_effect = get

    result = access.list(PODS)

    assert [item["metadata"]["name"] for item in result["items"]] == ["a-pod", "c-pod"]


def test_list_with_no_permitted_namespaces_is_empty(access, dynamic, resolver):
    resolver.permitted_namespaces.return_value = []

    result = access.list(classify("apis/apps/v1/deployments"))

    assert result == {
        "apiVersion": "apps/v1",
        "kind": "DeploymentList",
        "metadata": {"resourceVersion": ""},
        "items": [],
    }
    dynamic.get.assert_not_called()


def test_watch_merges_namespace_streams(access, dynamic, resolver):
    responses = {
        "a": WatchResponse([pod_event("ADDED", "a-pod", "a")]),
        "b": WatchResponse([pod_event("ADDED", "b-pod", "b"), pod_event("DELETED", "b-pod", "b", "2")]),
    }
    dynamic.get.side_effect = lambda resource, **kwargs: responses[kwargs["namespace"]]

    events = list(access.watch(WATCH_PODS))

    resolver.permitted_namespaces.assert_called_once_with("watch", "", "v1", "pods")
    assert sorted((e["type"], e["object"]["metadata"]["name"]) for e in events) == [
        ("ADDED", "a-pod"),
        ("ADDED", "b-pod"),
        ("DELETED", "b-pod"),
    ]
    for call in dynamic.get.call_args_list:
        assert call.kwargs["watch"] is True
        assert call.kwargs["timeout_seconds"] == 300
        assert call.kwargs["_request_timeout"] == (5, 300 + WATCH_READ_GRACE)


def test_watch_honors_client_options(access, dynamic):
    dynamic.get.side_effect = lambda resource, **kwargs: WatchResponse([])

    list(access.watch(WATCH_PODS, {"timeoutSeconds": "30", "resourceVersion": "12"}))

    for call in dynamic.get.call_args_list:
        assert call.kwargs["timeout_seconds"] == 30
        assert call.kwargs["resource_version"] == "12"
        assert call.kwargs["_request_timeout"] == (5, 30 + WATCH_READ_GRACE)


def test_stop_cuts_off_silent_namespace_watches(access, dynamic):
    responses = {
        "a": WatchResponse([pod_event("ADDED", "a-pod", "a")], hold_open=True),
        "b": WatchResponse([], hold_open=True),
    }
    dynamic.get.side_effect = lambda resource, **kwargs: responses[kwargs["namespace"]]

    merger = access.watch(WATCH_PODS)
    stream = iter(merger)
    assert next(stream)["object"]["metadata"]["name"] == "a-pod"

    merger.stop()

    wait_for(merger.done.is_set, failure_message="namespace watches still blocked after stop")
    assert responses["a"].shutdown_calls == 1
    assert responses["b"].shutdown_calls == 1


def test_close_before_connect_shuts_down_late_response(dynamic):
    response = WatchResponse([], hold_open=True)
    dynamic.get.return_value = response
    source = NamespaceWatch(dynamic, SimpleNamespace(kind="Pod"), "a", {"timeout_seconds": 60})

    source.close()

    assert list(source) == []
    assert response.shutdown_calls == 1


@pytest.mark.parametrize(
    "error",
    [
        ApiException(status=500, reason="Internal Server Error"),
        MaxRetryError(pool=None, url="/apis", reason="connection refused"),
    ],
)
def test_discovery_failure_is_upstream_unavailable(access, dynamic, error):
    dynamic.resources.get.side_effect = error

    with pytest.raises(UpstreamUnavailable):
        access.resolve(PODS)


def test_dynamic_client_construction_failure(resolver):
    access = ScopedListerWatcher(resolver)

    with patch(
        "rbac_gateway.scoped.lister_watcher.DynamicClient",
        side_effect=MaxRetryError(pool=None, url="/api", reason="connection refused"),
    ), patch("rbac_gateway.scoped.lister_watcher.client.ApiClient"):
        with pytest.raises(UpstreamUnavailable):
            access.dynamic


def test_translate_options_casts_values():
    options = translate_options({"allowWatchBookmarks": "true", "timeoutSeconds": "5", "limit": "10"}, WATCH_OPTIONS)
    assert options == {"allow_watch_bookmarks": True, "timeout_seconds": 5}


@pytest.mark.parametrize("value", ["abc", "-1", ""])
def test_translate_options_rejects_bad_timeout(value):
    with pytest.raises(MalformedQuery):
        translate_options({"timeoutSeconds": value}, LIST_OPTIONS)


@pytest.mark.parametrize(
    "versions,expected",
    [
        ([], ""),
        (["9", "100", "42"], "100"),
        (["abc", "100", "xyz"], "xyz"),
    ],
)
def test_pick_resource_version(versions, expected):
    assert pick_resource_version(versions) == expected
