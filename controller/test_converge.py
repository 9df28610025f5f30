"""
Tests for the create-or-update helpers
"""

import pytest
from kubernetes.client.rest import ApiException

from settings import Config, logger
from exceptions import NotManagedError
from kube import ObjectKey
from converge import basic_delete, converge_object, create_no_update, managed_labels, owner_references_for


KEY = ObjectKey("v1", "ConfigMap", "posit-team", "connect-config")

OWNER = {
    "apiVersion": "core.siteoperator.io/v1beta1",
    "kind": "Site",
    "metadata": {"name": "main", "namespace": "posit-team", "uid": "site-uid"},
}


def set_data(value):
    def mutate(obj):
        obj["data"] = {"rstudio-connect.gcfg": value}
    return mutate


def test_owner_references_for():
    refs = owner_references_for(OWNER)
    assert refs == [{
        "apiVersion": "core.siteoperator.io/v1beta1",
        "kind": "Site",
        "name": "main",
        "uid": "site-uid",
        "controller": True,
        "blockOwnerDeletion": True,
    }]


def test_converge_creates_missing_object(kube):
    changed = converge_object(kube, KEY, owner_references_for(OWNER), set_data("a"), logger)

    assert changed, "Absent object should be created"
    obj = kube.get(KEY)
    assert obj["data"] == {"rstudio-connect.gcfg": "a"}
    assert obj["metadata"]["labels"][Config.MANAGED_BY_KEY] == Config.MANAGED_BY_VALUE
    assert obj["metadata"]["ownerReferences"][0]["uid"] == "site-uid"
    assert kube.writes == [("create", KEY)]


def test_converge_no_op_does_not_write(kube):
    converge_object(kube, KEY, owner_references_for(OWNER), set_data("a"), logger)
    kube.writes.clear()

    changed = converge_object(kube, KEY, owner_references_for(OWNER), set_data("a"), logger)

    assert not changed, "Identical content should report no change"
    assert kube.writes == [], "No write should be issued"


def test_converge_updates_changed_object(kube):
    converge_object(kube, KEY, owner_references_for(OWNER), set_data("a"), logger)
    version = kube.get(KEY)["metadata"]["resourceVersion"]

    changed = converge_object(kube, KEY, owner_references_for(OWNER), set_data("b"), logger)

    assert changed
    obj = kube.get(KEY)
    assert obj["data"]["rstudio-connect.gcfg"] == "b"
    assert obj["metadata"]["resourceVersion"] != version
    assert kube.writes[-1] == ("update", KEY)


def test_converge_restamps_ownership_dropped_by_mutate(kube):
    converge_object(kube, KEY, owner_references_for(OWNER), set_data("a"), logger)

    def careless(obj):
        obj["metadata"]["labels"] = {"app": "connect"}
        obj["metadata"]["ownerReferences"] = []

    converge_object(kube, KEY, owner_references_for(OWNER), careless, logger)

    obj = kube.get(KEY)
    assert obj["metadata"]["labels"] == managed_labels({"app": "connect"})
    assert obj["metadata"]["ownerReferences"] == owner_references_for(OWNER)


def test_converge_preserves_fields_mutate_does_not_touch(kube):
    converge_object(kube, KEY, owner_references_for(OWNER), set_data("a"), logger)
    live = kube.objects[KEY]
    live["metadata"]["annotations"] = {"kept": "yes"}

    converge_object(kube, KEY, owner_references_for(OWNER), set_data("b"), logger)

    assert kube.get(KEY)["metadata"]["annotations"] == {"kept": "yes"}


def test_converge_conflict_propagates(kube):
    converge_object(kube, KEY, owner_references_for(OWNER), set_data("a"), logger)

    def concurrent_writer(obj):
        # someone else writes between our read and our update
        kube.objects[KEY]["metadata"]["resourceVersion"] = "999"
        obj["data"] = {"rstudio-connect.gcfg": "mine"}

    with pytest.raises(ApiException) as exc:
        converge_object(kube, KEY, owner_references_for(OWNER), concurrent_writer, logger)
    assert exc.value.status == 409
    assert kube.get(KEY)["data"]["rstudio-connect.gcfg"] == "a"


def test_converge_failed_mutate_writes_nothing(kube):
    converge_object(kube, KEY, owner_references_for(OWNER), set_data("a"), logger)
    kube.writes.clear()

    def broken(obj):
        obj["data"] = {"half": "done"}
        raise ValueError("template failed")

    with pytest.raises(ValueError):
        converge_object(kube, KEY, owner_references_for(OWNER), broken, logger)
    assert kube.writes == []
    assert kube.get(KEY)["data"] == {"rstudio-connect.gcfg": "a"}


def test_converge_refuses_unmanaged_object(kube):
    kube.create({"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": KEY.name, "namespace": KEY.namespace}})
    kube.writes.clear()

    with pytest.raises(NotManagedError):
        converge_object(kube, KEY, owner_references_for(OWNER), set_data("a"), logger)
    assert kube.writes == []


def _volume(size):
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": "connect-data", "namespace": "posit-team", "labels": managed_labels()},
        "spec": {"resources": {"requests": {"storage": size}}},
    }


def test_create_no_update_creates_then_leaves_alone(kube):
    assert create_no_update(kube, _volume("10Gi"), logger)
    assert not create_no_update(kube, _volume("20Gi"), logger)

    key = ObjectKey.of(_volume("10Gi"))
    assert kube.get(key)["spec"]["resources"]["requests"]["storage"] == "10Gi"
    assert [w[0] for w in kube.writes] == ["create"]


def test_create_no_update_requires_managed_target(kube):
    target = _volume("10Gi")
    target["metadata"]["labels"] = {}
    with pytest.raises(NotManagedError):
        create_no_update(kube, target, logger)


def test_basic_delete(kube):
    assert not basic_delete(kube, KEY, logger), "Missing object is not an error"

    converge_object(kube, KEY, [], set_data("a"), logger)
    assert basic_delete(kube, KEY, logger)
    assert kube.get(KEY) is None


def test_basic_delete_refuses_unmanaged(kube):
    kube.create({"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": KEY.name, "namespace": KEY.namespace}})
    with pytest.raises(NotManagedError):
        basic_delete(kube, KEY, logger)
    assert kube.get(KEY) is not None
