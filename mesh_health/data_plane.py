# SPDX-License-Identifier: MIT

"""Data plane checks.

Meshed workloads are found through the control-plane namespace label the
proxy injector stamps on every pod. An empty data plane namespace means
proxies in all namespaces.
"""

from __future__ import annotations

import logging
from typing import Any

from mesh_health.config import CONTROLLER_NS_LABEL, EXPORTED_LABEL, PROXY_CONTAINER_NAME
from mesh_health.control_plane import check_namespace
from mesh_health.errors import MeshHealthError
from mesh_health.healthcheck import DATA_PLANE_CHECKS
from mesh_health.models import Category, new_checker

logger = logging.getLogger(__name__)

CONFIG_ANNOTATION_PREFIXES = ("config.linkerd.io", "config.alpha.linkerd.io")
PROXY_INJECT_ANNOTATION = "linkerd.io/inject"
# Pod states in which no proxy container is expected to run.
FINISHED_POD_STATUSES = frozenset({"Completed", "NodeShutdown", "Shutdown", "Terminated"})


def pod_status(pod) -> str:
    """The pod's reason when set, else the first container waiting/terminated reason, else its phase."""
    status = pod.status
    if status is None:
        return ""
    if status.reason:
        return status.reason
    for container in status.container_statuses or []:
        state = container.state
        if state is None:
            continue
        if state.waiting is not None and state.waiting.reason:
            return state.waiting.reason
        if state.terminated is not None and state.terminated.reason:
            return state.terminated.reason
    return status.phase or ""


def proxy_ready(pod) -> bool:
    for container in (pod.status.container_statuses or []) if pod.status else []:
        if container.name == PROXY_CONTAINER_NAME:
            return bool(container.ready)
    return False


def check_pods_running(pods: list[Any], namespace: str = "") -> None:
    if not pods:
        message = f'no "{PROXY_CONTAINER_NAME}" containers found'
        if namespace:
            message += f' in the "{namespace}" namespace'
        raise MeshHealthError(message)
    for pod in pods:
        status = pod_status(pod)
        if status in FINISHED_POD_STATUSES:
            continue
        if status not in ("Running", "Evicted"):
            raise MeshHealthError(f'pod "{pod.metadata.name}" status is {pod.status.phase}')
        if not proxy_ready(pod):
            raise MeshHealthError(
                f'container "{PROXY_CONTAINER_NAME}" in pod "{pod.metadata.name}" is not ready'
            )


# =====================================================================
# Label and annotation placement
# =====================================================================

def is_config_annotation(key: str) -> bool:
    return key.startswith(CONFIG_ANNOTATION_PREFIXES) or key == PROXY_INJECT_ANNOTATION


def _misplaced(objects: list[Any], attribute: str, predicate) -> list[str]:
    lines = []
    for obj in objects:
        keys = sorted(k for k in (getattr(obj.metadata, attribute) or {}) if predicate(k))
        if keys:
            lines.append(f"\t* {obj.metadata.namespace}/{obj.metadata.name}")
            lines.extend(f"\t\t{key}" for key in keys)
    return lines


def check_misconfigured_pod_labels(pods: list[Any]) -> None:
    lines = _misplaced(pods, "labels", is_config_annotation)
    if lines:
        raise MeshHealthError("Some labels on data plane pods should be annotations:\n" + "\n".join(lines))


def check_misconfigured_service_labels(services: list[Any]) -> None:
    lines = _misplaced(services, "labels", is_config_annotation)
    if lines:
        raise MeshHealthError("Some labels on data plane services should be annotations:\n" + "\n".join(lines))


def check_misconfigured_service_annotations(services: list[Any]) -> None:
    # The export marker is only honoured as a label.
    lines = _misplaced(services, "annotations", lambda key: key == EXPORTED_LABEL)
    if lines:
        raise MeshHealthError("Some annotations on data plane services should be labels:\n" + "\n".join(lines))


# =====================================================================
# Category
# =====================================================================

def categories(hc) -> list[Category]:
    opts = hc.options

    def data_plane_pods() -> list[Any]:
        return hc.kube_api.list_pods(
            opts.data_plane_namespace or None,
            label_selector=f"{CONTROLLER_NS_LABEL}={opts.control_plane_namespace}",
        )

    def data_plane_services() -> list[Any]:
        return hc.kube_api.list_services(opts.data_plane_namespace or None)

    def namespace_exists():
        if not opts.data_plane_namespace:
            return None
        check_namespace(hc.kube_api, opts.data_plane_namespace, True)
        return None

    def proxies_ready():
        pods = data_plane_pods()
        logger.debug("Found %d data plane pods", len(pods))
        check_pods_running(pods, opts.data_plane_namespace)

    return [
        Category(DATA_PLANE_CHECKS).with_checks(
            new_checker("data plane namespace exists").with_hint_anchor("l5d-data-plane-exists").as_fatal()
            .with_check(namespace_exists),
            new_checker("data plane proxies are ready").with_hint_anchor("l5d-data-plane-ready")
            .with_retry_deadline(opts.retry_deadline).as_fatal()
            .with_check(proxies_ready),
            new_checker("data plane pod labels are configured correctly")
            .with_hint_anchor("l5d-data-plane-pod-labels").as_warning()
            .with_check(lambda: check_misconfigured_pod_labels(data_plane_pods())),
            new_checker("data plane service labels are configured correctly")
            .with_hint_anchor("l5d-data-plane-services-labels").as_warning()
            .with_check(lambda: check_misconfigured_service_labels(data_plane_services())),
            new_checker("data plane service annotations are configured correctly")
            .with_hint_anchor("l5d-data-plane-services-annotations").as_warning()
            .with_check(lambda: check_misconfigured_service_annotations(data_plane_services())),
        ),
    ]
