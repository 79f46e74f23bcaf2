# SPDX-License-Identifier: MIT

"""Thin wrapper over the Kubernetes Python client used by every check."""

from __future__ import annotations

import base64
import logging
from typing import Any

import yaml
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from mesh_health.config import REQUEST_TIMEOUT
from mesh_health.errors import MeshHealthError

logger = logging.getLogger(__name__)


def _items(result: Any) -> list[Any]:
    return list(result.items or []) if hasattr(result, "items") else []


def decode_secret_data(secret) -> dict[str, bytes]:
    return {key: base64.b64decode(value) for key, value in (secret.data or {}).items()}


def parse_version(git_version: str) -> tuple[int, int, int]:
    """Parse ``v1.27.3-gke.100`` style versions into a comparable tuple."""
    core = git_version.lstrip("v").split("-", 1)[0].split("+", 1)[0]
    parts = core.split(".")
    numbers = []
    for part in parts[:3]:
        digits = "".join(ch for ch in part if ch.isdigit())
        numbers.append(int(digits) if digits else 0)
    while len(numbers) < 3:
        numbers.append(0)
    return numbers[0], numbers[1], numbers[2]


class KubernetesAPI:
    """Cluster client collaborator.

    Receives an already configured ``ApiClient``; every call is bounded by
    ``timeout`` seconds.
    """

    def __init__(self, api_client: client.ApiClient, timeout: float = REQUEST_TIMEOUT) -> None:
        self.api_client = api_client
        self.timeout = timeout
        self.core = client.CoreV1Api(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.rbac = client.RbacAuthorizationV1Api(api_client)
        self.admission = client.AdmissionregistrationV1Api(api_client)
        self.apiregistration = client.ApiregistrationV1Api(api_client)
        self.authorization = client.AuthorizationV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)

    @classmethod
    def from_kubeconfig(cls, kubeconfig: str | None = None, context: str | None = None,
                        timeout: float = REQUEST_TIMEOUT) -> KubernetesAPI:
        try:
            api_client = config.new_client_from_config(config_file=kubeconfig, context=context)
        except ConfigException:
            config.load_incluster_config()
            api_client = client.ApiClient()
        return cls(api_client, timeout=timeout)

    @classmethod
    def from_kubeconfig_bytes(cls, data: bytes, timeout: float = REQUEST_TIMEOUT) -> KubernetesAPI:
        kubeconfig = yaml.safe_load(data)
        if not isinstance(kubeconfig, dict):
            raise MeshHealthError("kubeconfig payload is not a mapping")
        return cls(config.new_client_from_config_dict(kubeconfig), timeout=timeout)

    def _opts(self, **kwargs: Any) -> dict[str, Any]:
        opts = {k: v for k, v in kwargs.items() if v}
        opts["_request_timeout"] = self.timeout
        return opts

    # -- discovery ------------------------------------------------------

    def get_version_info(self):
        return client.VersionApi(self.api_client).get_code(_request_timeout=self.timeout)

    def resource_authz(self, namespace: str, verb: str, group: str, version: str, resource: str) -> None:
        """Authorization dry-run; raises if ``verb`` on ``resource`` is not allowed."""
        review = client.V1SelfSubjectAccessReview(
            spec=client.V1SelfSubjectAccessReviewSpec(
                resource_attributes=client.V1ResourceAttributes(
                    namespace=namespace or None, verb=verb, group=group,
                    version=version, resource=resource,
                ),
            ),
        )
        result = self.authorization.create_self_subject_access_review(review, _request_timeout=self.timeout)
        if result.status and result.status.allowed:
            return
        target = f"{resource}.{group}" if group else resource
        reason = f": {result.status.reason}" if result.status and result.status.reason else ""
        raise MeshHealthError(f"not authorized to access {target}{reason}")

    # -- core ------------------------------------------------------------

    def get_namespace(self, name: str):
        return self.core.read_namespace(name, _request_timeout=self.timeout)

    def namespace_exists(self, name: str) -> bool:
        try:
            self.get_namespace(name)
        except client.ApiException as exc:
            if exc.status == 404:
                return False
            raise
        return True

    def list_pods(self, namespace: str | None = None, label_selector: str | None = None) -> list[Any]:
        if namespace:
            return _items(self.core.list_namespaced_pod(namespace, **self._opts(label_selector=label_selector)))
        return _items(self.core.list_pod_for_all_namespaces(**self._opts(label_selector=label_selector)))

    def list_nodes(self) -> list[Any]:
        return _items(self.core.list_node(**self._opts()))

    def list_services(self, namespace: str | None = None, label_selector: str | None = None) -> list[Any]:
        if namespace:
            return _items(self.core.list_namespaced_service(namespace, **self._opts(label_selector=label_selector)))
        return _items(self.core.list_service_for_all_namespaces(**self._opts(label_selector=label_selector)))

    def get_endpoints(self, namespace: str, name: str):
        return self.core.read_namespaced_endpoints(name, namespace, _request_timeout=self.timeout)

    def get_config_map(self, namespace: str, name: str):
        return self.core.read_namespaced_config_map(name, namespace, _request_timeout=self.timeout)

    def get_secret(self, namespace: str, name: str):
        return self.core.read_namespaced_secret(name, namespace, _request_timeout=self.timeout)

    def get_secret_data(self, namespace: str, name: str) -> dict[str, bytes]:
        return decode_secret_data(self.get_secret(namespace, name))

    def list_secrets(self, namespace: str | None = None, field_selector: str | None = None) -> list[Any]:
        if namespace:
            return _items(self.core.list_namespaced_secret(namespace, **self._opts(field_selector=field_selector)))
        return _items(self.core.list_secret_for_all_namespaces(**self._opts(field_selector=field_selector)))

    def list_service_accounts(self, namespace: str, label_selector: str | None = None) -> list[Any]:
        return _items(self.core.list_namespaced_service_account(namespace, **self._opts(label_selector=label_selector)))

    def get_service_account(self, namespace: str, name: str):
        return self.core.read_namespaced_service_account(name, namespace, _request_timeout=self.timeout)

    # -- apps ------------------------------------------------------------

    def list_deployments(self, namespace: str | None = None, label_selector: str | None = None) -> list[Any]:
        if namespace:
            return _items(self.apps.list_namespaced_deployment(namespace, **self._opts(label_selector=label_selector)))
        return _items(self.apps.list_deployment_for_all_namespaces(**self._opts(label_selector=label_selector)))

    def get_deployment(self, namespace: str, name: str):
        return self.apps.read_namespaced_deployment(name, namespace, _request_timeout=self.timeout)

    def get_daemon_set(self, namespace: str, name: str):
        return self.apps.read_namespaced_daemon_set(name, namespace, _request_timeout=self.timeout)

    # -- rbac ------------------------------------------------------------

    def list_cluster_roles(self, label_selector: str | None = None) -> list[Any]:
        return _items(self.rbac.list_cluster_role(**self._opts(label_selector=label_selector)))

    def get_cluster_role(self, name: str):
        return self.rbac.read_cluster_role(name, _request_timeout=self.timeout)

    def list_cluster_role_bindings(self, label_selector: str | None = None) -> list[Any]:
        return _items(self.rbac.list_cluster_role_binding(**self._opts(label_selector=label_selector)))

    def get_cluster_role_binding(self, name: str):
        return self.rbac.read_cluster_role_binding(name, _request_timeout=self.timeout)

    def get_role(self, namespace: str, name: str):
        return self.rbac.read_namespaced_role(name, namespace, _request_timeout=self.timeout)

    # -- admission / aggregation ----------------------------------------

    def get_mutating_webhook_configuration(self, name: str):
        return self.admission.read_mutating_webhook_configuration(name, _request_timeout=self.timeout)

    def get_validating_webhook_configuration(self, name: str):
        return self.admission.read_validating_webhook_configuration(name, _request_timeout=self.timeout)

    def get_api_service(self, name: str):
        return self.apiregistration.read_api_service(name, _request_timeout=self.timeout)

    # -- custom resources ------------------------------------------------

    def list_custom_objects(self, group: str, version: str, plural: str) -> list[dict[str, Any]]:
        result = self.custom.list_cluster_custom_object(group, version, plural, _request_timeout=self.timeout)
        return list(result.get("items") or [])
