"""
Create-or-update helpers shared by every reconciler

All helpers refuse to touch an existing object that does not carry the
managed-by label, and none of them retry: a conflict or API error goes back
to the caller so the whole reconcile is re-delivered.
"""

import copy
from typing import Callable, Dict, List

from settings import Config, with_values
from exceptions import NotManagedError
from kube import ObjectKey


def is_managed(obj: Dict) -> bool:
    labels = obj.get("metadata", {}).get("labels") or {}
    # a missing label reads as "" and fails the comparison
    return labels.get(Config.MANAGED_BY_KEY) == Config.MANAGED_BY_VALUE


def managed_labels(extra: Dict[str, str] = None) -> Dict[str, str]:
    labels = dict(extra or {})
    labels[Config.MANAGED_BY_KEY] = Config.MANAGED_BY_VALUE
    return labels


def owner_references_for(owner: Dict) -> List[Dict]:
    """Owner reference list that makes children cascade-delete with owner"""
    meta = owner["metadata"]
    return [{
        "apiVersion": owner["apiVersion"],
        "kind": owner["kind"],
        "name": meta["name"],
        "uid": meta["uid"],
        "controller": True,
        "blockOwnerDeletion": True,
    }]


def empty_object(key: ObjectKey) -> Dict:
    return {
        "apiVersion": key.api_version,
        "kind": key.kind,
        "metadata": {"name": key.name, "namespace": key.namespace},
    }


def converge_object(
    kube,
    key: ObjectKey,
    owner_references: List[Dict],
    mutate: Callable[[Dict], None],
    log,
) -> bool:
    """
    Make the object at key match whatever mutate produces

    The live object (or an empty one of the right kind) is deep-copied and
    handed to mutate. Owner references and the managed-by label are stamped
    afterwards so mutate cannot drop them. Nothing is written when the result
    equals the live object.

    Args:
        kube: KubernetesClient
        key: Identity of the object
        owner_references: Owner references for the object
        mutate: Sets the desired fields on the object in place
        log: Logger or adapter

    Returns:
        True if the object was created or updated

    Raises:
        NotManagedError: the live object is not ours
        ApiException: any API failure, including 409 on concurrent update
    """
    log = with_values(log, event="create-or-update", object=str(key))

    live = kube.get(key)
    if live is not None and not is_managed(live):
        log.error("Object not managed by this operator; update refused")
        raise NotManagedError(key.kind, f"{key.namespace}/{key.name}", Config.MANAGED_BY_VALUE)

    obj = copy.deepcopy(live) if live is not None else empty_object(key)
    mutate(obj)

    meta = obj.setdefault("metadata", {})
    meta["name"] = key.name
    meta["namespace"] = key.namespace
    meta["ownerReferences"] = copy.deepcopy(owner_references)
    meta["labels"] = managed_labels(meta.get("labels"))

    if live is None:
        kube.create(obj)
        log.info("Created object")
        return True

    if obj == live:
        log.debug("Object unchanged")
        return False

    # the fetched resourceVersion rides along so a concurrent write is a 409
    meta["resourceVersion"] = live["metadata"].get("resourceVersion")
    kube.update(obj)
    log.info("Updated object")
    return True


def create_no_update(kube, target: Dict, log) -> bool:
    """
    Create target if nothing exists at its identity; never update

    For objects whose creation-time fields must not be overwritten, such as
    generated passwords or bound volumes.

    Returns:
        True if the object was created
    """
    key = ObjectKey.of(target)
    log = with_values(log, event="create-no-update", object=str(key))

    if not is_managed(target):
        log.error("Object to create not managed by this operator; create refused")
        raise NotManagedError(key.kind, f"{key.namespace}/{key.name}", Config.MANAGED_BY_VALUE)

    live = kube.get(key)
    if live is None:
        kube.create(target)
        log.info("Created object")
        return True

    if not is_managed(live):
        log.error("Existing object not managed by this operator")
        raise NotManagedError(key.kind, f"{key.namespace}/{key.name}", Config.MANAGED_BY_VALUE)

    log.debug("Found existing object; not updating")
    return False


def basic_delete(kube, key: ObjectKey, log) -> bool:
    """
    Delete the object at key if it exists and is ours

    Returns:
        True if a delete was issued
    """
    log = with_values(log, event="delete", object=str(key))

    live = kube.get(key)
    if live is None:
        log.debug("Object not found; doing nothing")
        return False

    if not is_managed(live):
        log.error("Object not managed by this operator; delete refused")
        raise NotManagedError(key.kind, f"{key.namespace}/{key.name}", Config.MANAGED_BY_VALUE)

    kube.delete(key)
    log.info("Deleted object")
    return True
