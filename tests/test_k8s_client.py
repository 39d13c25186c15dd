"""
Tests for the Kubernetes-backed taint store, with CoreV1Api mocked out.
"""

from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError, ReadTimeoutError

from kube_dethrottler import k8s_client
from kube_dethrottler.k8s_client import (
    KubeTaintStore,
    TaintConflictError,
    TaintDescriptor,
    TaintEffect,
    TaintStoreError,
)

NODE = "worker-1"
KEY = "kube-dethrottler/high-load"


def make_node(taints=None, resource_version="42"):
    return client.V1Node(
        metadata=client.V1ObjectMeta(name=NODE, resource_version=resource_version),
        spec=client.V1NodeSpec(taints=taints),
    )


@pytest.fixture
def v1():
    api = MagicMock()
    api.api_client = client.ApiClient()
    return api


@pytest.fixture
def store(v1):
    return KubeTaintStore(v1)


def patch_body(v1):
    return v1.patch_node.call_args.kwargs["body"]


class TestHasTaint:

    def test_matches_key_and_effect(self, store, v1):
        v1.read_node.return_value = make_node([client.V1Taint(key=KEY, value="other", effect="NoSchedule")])
        assert store.has_taint(NODE, KEY, TaintEffect.NO_SCHEDULE)

    def test_different_effect_does_not_match(self, store, v1):
        v1.read_node.return_value = make_node([client.V1Taint(key=KEY, value="high-load", effect="NoExecute")])
        assert not store.has_taint(NODE, KEY, TaintEffect.NO_SCHEDULE)

    def test_no_taints(self, store, v1):
        v1.read_node.return_value = make_node(None)
        assert not store.has_taint(NODE, KEY, TaintEffect.NO_SCHEDULE)

    def test_api_error_is_wrapped(self, store, v1):
        v1.read_node.side_effect = ApiException(status=503, reason="Service Unavailable")
        with pytest.raises(TaintStoreError):
            store.has_taint(NODE, KEY, TaintEffect.NO_SCHEDULE)

    def test_unreachable_api_server_is_wrapped(self, store, v1):
        v1.read_node.side_effect = MaxRetryError(None, f"/api/v1/nodes/{NODE}", reason=ConnectionRefusedError())
        with pytest.raises(TaintStoreError, match="failed to get node"):
            store.has_taint(NODE, KEY, TaintEffect.NO_SCHEDULE)


class TestApplyTaint:

    def test_adds_to_existing_list_with_version_guard(self, store, v1):
        other = client.V1Taint(key="dedicated", value="gpu", effect="NoSchedule")
        v1.read_node.return_value = make_node([other])

        store.apply_taint(NODE, KEY, "high-load", TaintEffect.NO_SCHEDULE, timeout=3)

        body = patch_body(v1)
        assert body[0] == {"op": "test", "path": "/metadata/resourceVersion", "value": "42"}
        assert body[1]["op"] == "add"
        assert body[1]["path"] == "/spec/taints"
        assert body[1]["value"] == [
            {"key": "dedicated", "value": "gpu", "effect": "NoSchedule"},
            {"key": KEY, "value": "high-load", "effect": "NoSchedule"},
        ]
        assert v1.patch_node.call_args.kwargs["_request_timeout"] == 3

    def test_node_without_taints(self, store, v1):
        v1.read_node.return_value = make_node(None)
        store.apply_taint(NODE, KEY, "high-load", TaintEffect.PREFER_NO_SCHEDULE)
        assert patch_body(v1)[1]["value"] == [
            {"key": KEY, "value": "high-load", "effect": "PreferNoSchedule"},
        ]

    def test_already_present_is_noop(self, store, v1):
        v1.read_node.return_value = make_node([client.V1Taint(key=KEY, value="high-load", effect="NoSchedule")])
        store.apply_taint(NODE, KEY, "high-load", TaintEffect.NO_SCHEDULE)
        v1.patch_node.assert_not_called()

    def test_different_value_is_replaced_in_place(self, store, v1):
        v1.read_node.return_value = make_node([
            client.V1Taint(key=KEY, value="stale", effect="NoSchedule"),
            client.V1Taint(key="dedicated", value="gpu", effect="NoSchedule"),
        ])
        store.apply_taint(NODE, KEY, "high-load", TaintEffect.NO_SCHEDULE)
        assert patch_body(v1)[1]["value"] == [
            {"key": KEY, "value": "high-load", "effect": "NoSchedule"},
            {"key": "dedicated", "value": "gpu", "effect": "NoSchedule"},
        ]

    def test_same_key_other_effect_is_kept(self, store, v1):
        v1.read_node.return_value = make_node([client.V1Taint(key=KEY, value="high-load", effect="NoExecute")])
        store.apply_taint(NODE, KEY, "high-load", TaintEffect.NO_SCHEDULE)
        assert len(patch_body(v1)[1]["value"]) == 2

    @pytest.mark.parametrize("status", [409, 422])
    def test_concurrent_change_is_conflict(self, store, v1, status):
        v1.read_node.return_value = make_node([])
        v1.patch_node.side_effect = ApiException(status=status, reason="Conflict")
        with pytest.raises(TaintConflictError):
            store.apply_taint(NODE, KEY, "high-load", TaintEffect.NO_SCHEDULE)

    def test_other_patch_errors(self, store, v1):
        v1.read_node.return_value = make_node([])
        v1.patch_node.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(TaintStoreError) as excinfo:
            store.apply_taint(NODE, KEY, "high-load", TaintEffect.NO_SCHEDULE)
        assert not isinstance(excinfo.value, TaintConflictError)

    def test_patch_timeout_is_wrapped(self, store, v1):
        v1.read_node.return_value = make_node([])
        v1.patch_node.side_effect = ReadTimeoutError(None, f"/api/v1/nodes/{NODE}", "Read timed out.")
        with pytest.raises(TaintStoreError) as excinfo:
            store.apply_taint(NODE, KEY, "high-load", TaintEffect.NO_SCHEDULE)
        assert not isinstance(excinfo.value, TaintConflictError)


class TestRemoveTaint:

    def test_removes_only_matching_taint(self, store, v1):
        v1.read_node.return_value = make_node([
            client.V1Taint(key=KEY, value="high-load", effect="NoSchedule"),
            client.V1Taint(key=KEY, value="high-load", effect="NoExecute"),
        ])
        store.remove_taint(NODE, KEY, TaintEffect.NO_SCHEDULE)
        assert patch_body(v1)[1]["value"] == [
            {"key": KEY, "value": "high-load", "effect": "NoExecute"},
        ]

    def test_last_taint_leaves_empty_list(self, store, v1):
        v1.read_node.return_value = make_node([client.V1Taint(key=KEY, value="high-load", effect="NoSchedule")])
        store.remove_taint(NODE, KEY, TaintEffect.NO_SCHEDULE)
        assert patch_body(v1)[1]["value"] == []

    def test_absent_taint_is_noop(self, store, v1):
        v1.read_node.return_value = make_node([client.V1Taint(key="dedicated", value="gpu", effect="NoSchedule")])
        store.remove_taint(NODE, KEY, TaintEffect.NO_SCHEDULE)
        v1.patch_node.assert_not_called()

    def test_read_failure(self, store, v1):
        v1.read_node.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(TaintStoreError):
            store.remove_taint(NODE, KEY, TaintEffect.NO_SCHEDULE)


class TestFromKubeconfig:

    def test_in_cluster_first(self, monkeypatch):
        incluster = MagicMock()
        kubeconfig = MagicMock()
        monkeypatch.setattr(k8s_client.config, "load_incluster_config", incluster)
        monkeypatch.setattr(k8s_client.config, "load_kube_config", kubeconfig)

        store = KubeTaintStore.from_kubeconfig("/tmp/kubeconfig")

        incluster.assert_called_once()
        kubeconfig.assert_not_called()
        assert isinstance(store, KubeTaintStore)

    def test_falls_back_to_kubeconfig(self, monkeypatch):
        kubeconfig = MagicMock()
        monkeypatch.setattr(
            k8s_client.config, "load_incluster_config",
            MagicMock(side_effect=k8s_client.config.ConfigException("not in cluster")),
        )
        monkeypatch.setattr(k8s_client.config, "load_kube_config", kubeconfig)

        KubeTaintStore.from_kubeconfig("/tmp/kubeconfig")

        kubeconfig.assert_called_once_with(config_file="/tmp/kubeconfig")

    def test_no_usable_config(self, monkeypatch):
        monkeypatch.setattr(
            k8s_client.config, "load_incluster_config",
            MagicMock(side_effect=k8s_client.config.ConfigException("not in cluster")),
        )
        monkeypatch.setattr(
            k8s_client.config, "load_kube_config",
            MagicMock(side_effect=k8s_client.config.ConfigException("no kubeconfig")),
        )
        with pytest.raises(TaintStoreError):
            KubeTaintStore.from_kubeconfig(None)


def test_descriptor_string():
    taint = TaintDescriptor(key=KEY, effect=TaintEffect.NO_SCHEDULE)
    assert str(taint) == f"{KEY}=high-load:NoSchedule"
