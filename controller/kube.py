"""
Kubernetes API access over plain dict manifests
"""

import base64
from dataclasses import dataclass
from typing import Dict, List, Optional

from kubernetes import client, config, dynamic
from kubernetes.client.rest import ApiException

from settings import Config, logger


@dataclass(frozen=True)
class ObjectKey:
    """Identity of a namespaced object"""
    api_version: str
    kind: str
    namespace: str
    name: str

    def __str__(self):
        return f"{self.kind}/{self.namespace}/{self.name}"

    @classmethod
    def of(cls, manifest: Dict) -> "ObjectKey":
        meta = manifest.get("metadata", {})
        return cls(manifest["apiVersion"], manifest["kind"], meta.get("namespace", ""), meta["name"])


class KubernetesClient:
    """Handles all Kubernetes API interactions"""

    def __init__(self):
        try:
            config.load_incluster_config()
        except config.ConfigException:
            logger.warning("Failed to load in-cluster config, trying local kubeconfig")
            config.load_kube_config()

        self.dynamic = dynamic.DynamicClient(client.ApiClient())
        self.v1 = client.CoreV1Api()
        self.timeout = Config.KUBE_REQUEST_TIMEOUT

    def _resource(self, api_version: str, kind: str):
        return self.dynamic.resources.get(api_version=api_version, kind=kind)

    def get(self, key: ObjectKey) -> Optional[Dict]:
        """
        Fetch an object

        Returns:
            The object as a dict, or None if it does not exist
        """
        try:
            obj = self._resource(key.api_version, key.kind).get(
                name=key.name, namespace=key.namespace, _request_timeout=self.timeout
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return obj.to_dict()

    def list(self, api_version: str, kind: str, namespace: str) -> List[Dict]:
        objs = self._resource(api_version, kind).get(namespace=namespace, _request_timeout=self.timeout)
        return [item.to_dict() for item in objs.items]

    def create(self, manifest: Dict) -> Dict:
        key = ObjectKey.of(manifest)
        obj = self._resource(key.api_version, key.kind).create(
            body=manifest, namespace=key.namespace, _request_timeout=self.timeout
        )
        return obj.to_dict()

    def update(self, manifest: Dict) -> Dict:
        """Replace an object; metadata.resourceVersion guards against concurrent writes"""
        key = ObjectKey.of(manifest)
        obj = self._resource(key.api_version, key.kind).replace(
            body=manifest, namespace=key.namespace, _request_timeout=self.timeout
        )
        return obj.to_dict()

    def delete(self, key: ObjectKey):
        self._resource(key.api_version, key.kind).delete(
            name=key.name, namespace=key.namespace, _request_timeout=self.timeout
        )

    def patch(self, key: ObjectKey, body: Dict) -> Dict:
        """Apply a JSON merge patch"""
        obj = self._resource(key.api_version, key.kind).patch(
            name=key.name,
            namespace=key.namespace,
            body=body,
            content_type="application/merge-patch+json",
            _request_timeout=self.timeout,
        )
        return obj.to_dict()

    def read_secret_value(self, namespace: str, name: str, key: str) -> Optional[str]:
        """
        Read one key of a Secret

        Returns:
            Decoded value, or None if the key is absent

        Raises:
            ApiException: if the Secret cannot be read (404 included)
        """
        secret = self.v1.read_namespaced_secret(name, namespace, _request_timeout=self.timeout)
        encoded = (secret.data or {}).get(key)
        if encoded is None:
            return None
        return base64.b64decode(encoded).decode()
