# SPDX-License-Identifier: MIT

"""Cluster and control-plane checks.

Covers the kubernetes-api, kubernetes-version, pre-kubernetes-setup,
linkerd-config, linkerd-existence, linkerd-api, linkerd-cni-plugin and
linkerd-ha-checks categories. The existence category also verifies that
the configured cluster networks cover the cluster's pod and service
addresses.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Union

from mesh_health.config import (
    CNI_CONFIG_MAP_NAME,
    CNI_RESOURCE_NAME,
    CONTROLLER_COMPONENT_LABEL,
    DEFAULT_CLUSTER_NETWORKS,
    EXPECTED_SERVICE_ACCOUNT_NAMES,
    HA_CONTROL_PLANE_COMPONENTS,
    MINIMUM_K8S_VERSION,
    control_plane_components_selector,
    fetch_current_configuration,
)
from mesh_health.errors import MeshHealthError, ResourceError, is_not_found
from mesh_health.healthcheck import (
    API_CHECKS,
    CNI_PLUGIN_CHECKS,
    CONFIG_CHECKS,
    CONTROL_PLANE_EXISTENCE_CHECKS,
    HA_CHECKS,
    KUBERNETES_API_CHECKS,
    KUBERNETES_VERSION_CHECKS,
    PRE_INSTALL_CHECKS,
)
from mesh_health.kube import parse_version
from mesh_health.models import Category, Outcome, new_checker

logger = logging.getLogger(__name__)

CNI_DISABLED_SKIP_REASON = "skipping check because CNI is not enabled"
NON_HA_SKIP_REASON = "not run for non HA installs"
ADMISSION_WEBHOOK_LABEL = "config.linkerd.io/admission-webhooks"
CONTROL_PLANE_POD_NAMES = ["destination", "identity", "proxy-injector"]
POD_CIDR_UNAVAILABLE_SKIP_REASON = "skipping check because the nodes aren't exposing podCIDR"

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


# =====================================================================
# Helpers
# =====================================================================

def _name(obj: Any) -> str:
    return obj.metadata.name


def check_resources(resource_name: str, objects: list[Any], expected_names: list[str],
                    should_exist: bool) -> None:
    if not should_exist:
        if objects:
            raise ResourceError(resource_name, sorted(_name(o) for o in objects))
        return
    present = {_name(o) for o in objects}
    missing = sorted(name for name in expected_names if name not in present)
    if missing:
        raise MeshHealthError(f"missing {resource_name}: {', '.join(missing)}")


def check_namespace(kube_api, namespace: str, should_exist: bool) -> None:
    exists = kube_api.namespace_exists(namespace)
    if should_exist and not exists:
        raise MeshHealthError(f'The "{namespace}" namespace does not exist')
    if not should_exist and exists:
        raise MeshHealthError(f'The "{namespace}" namespace already exists')


def check_version(version: tuple[int, int, int]) -> None:
    if version < MINIMUM_K8S_VERSION:
        have = ".".join(str(v) for v in version)
        want = ".".join(str(v) for v in MINIMUM_K8S_VERSION)
        raise MeshHealthError(f"Kubernetes is on version [{have}], but version [{want}] or more recent is required")


def _pod_component(pod) -> str:
    component = (pod.metadata.labels or {}).get(CONTROLLER_COMPONENT_LABEL, "")
    return component.removeprefix("linkerd-")


def validate_control_plane_pods(pods: list[Any]) -> None:
    """Each control plane component needs at least one running pod with all containers ready."""
    by_component: dict[str, list[Any]] = {}
    for pod in pods:
        if pod.status is None or pod.status.phase != "Running":
            continue
        by_component.setdefault(_pod_component(pod), []).append(pod)

    for name in CONTROL_PLANE_POD_NAMES:
        running = by_component.get(name)
        if not running:
            raise MeshHealthError(f'No running pods for "linkerd-{name}"')
        last_error = None
        for pod in running:
            not_ready = [cs for cs in pod.status.container_statuses or [] if not cs.ready]
            if not not_ready:
                break
            last_error = MeshHealthError(f"pod/{pod.metadata.name} container {not_ready[-1].name} is not ready")
        else:
            raise last_error


def check_min_replicas_available(kube_api, namespace: str) -> None:
    faulty = []
    for component in HA_CONTROL_PLANE_COMPONENTS:
        deployment = kube_api.get_deployment(namespace, component)
        if (deployment.status.available_replicas or 0) <= 1:
            faulty.append(component)
    if faulty:
        raise MeshHealthError(f"not enough replicas available for [{' '.join(faulty)}]")


def check_api_service_available(api_service) -> None:
    for condition in (api_service.status.conditions or []) if api_service.status else []:
        if condition.type == "Available" and condition.status == "True":
            return
    raise MeshHealthError(f"{api_service.metadata.name} service not available")


def expected_rbac_names(namespace: str) -> list[str]:
    return [f"linkerd-{namespace}-identity", f"linkerd-{namespace}-proxy-injector"]


# =====================================================================
# Cluster networks
# =====================================================================

def parse_cluster_networks(cluster_networks: str) -> list[IPNetwork]:
    networks = []
    for cidr in cluster_networks.split(","):
        try:
            networks.append(ipaddress.ip_network(cidr.strip(), strict=False))
        except ValueError as exc:
            raise MeshHealthError(f"invalid clusterNetworks entry {cidr!r}: {exc}") from exc
    return networks


def networks_contain_cidr(networks: list[IPNetwork], cidr: str) -> bool:
    """A pod CIDR fits when a cluster network holds its address and is no wider than it."""
    pod_cidr = ipaddress.ip_interface(cidr)
    return any(
        pod_cidr.ip in network and pod_cidr.network.prefixlen >= network.prefixlen
        for network in networks
    )


def networks_contain_ip(networks: list[IPNetwork], ip: str) -> bool:
    address = ipaddress.ip_address(ip)
    return any(address in network for network in networks)


def check_node_pod_cidrs(nodes: list[Any], cluster_networks: str) -> Outcome | None:
    networks = parse_cluster_networks(cluster_networks)
    pod_cidrs = [node.spec.pod_cidr for node in nodes if node.spec is not None and node.spec.pod_cidr]
    # Some providers never expose spec.podCIDR.
    if not pod_cidrs:
        return Outcome.skip(POD_CIDR_UNAVAILABLE_SKIP_REASON)
    bad = sorted(cidr for cidr in pod_cidrs if not networks_contain_cidr(networks, cidr))
    if bad:
        suggestion = "\\,".join(bad)
        raise MeshHealthError(
            f"node has podCIDR(s) [{' '.join(bad)}] which are not contained in the Linkerd clusterNetworks.\n"
            f'\tTry installing linkerd via --set clusterNetworks="{suggestion}"'
        )
    return None


def check_pod_ips(pods: list[Any], cluster_networks: str) -> None:
    networks = parse_cluster_networks(cluster_networks)
    for pod in pods:
        if pod.spec is not None and pod.spec.host_network:
            continue
        pod_ip = pod.status.pod_ip if pod.status is not None else None
        if not pod_ip:
            continue
        if not networks_contain_ip(networks, pod_ip):
            raise MeshHealthError(
                f'the Linkerd clusterNetworks ["{cluster_networks}"] do not include pod '
                f"{pod.metadata.namespace}/{pod.metadata.name} ({pod_ip})"
            )


def check_service_ips(services: list[Any], cluster_networks: str) -> None:
    networks = parse_cluster_networks(cluster_networks)
    for svc in services:
        cluster_ip = svc.spec.cluster_ip if svc.spec is not None else None
        if not cluster_ip or cluster_ip == "None":
            continue
        if not networks_contain_ip(networks, cluster_ip):
            raise MeshHealthError(
                f'the Linkerd clusterNetworks ["{cluster_networks}"] do not include svc '
                f"{svc.metadata.namespace}/{svc.metadata.name} ({cluster_ip})"
            )


# =====================================================================
# Categories
# =====================================================================

def categories(hc) -> list[Category]:
    opts = hc.options
    ctx = hc.context.cluster
    deadline = opts.retry_deadline

    def query_api():
        ctx.kube_version = parse_version(hc.kube_api.get_version_info().git_version)

    def minimum_version():
        if ctx.kube_version is None:
            raise MeshHealthError("Kubernetes version has not been discovered")
        check_version(ctx.kube_version)

    def can(verb: str, group: str, version: str, resource: str, namespace: str = ""):
        def body():
            hc.kube_api.resource_authz(namespace, verb, group, version, resource)
        return body

    def load_config():
        ctx.config_map, ctx.values = fetch_current_configuration(hc.kube_api, opts.control_plane_namespace)

    def heartbeat_service_account():
        if ctx.values is not None and ctx.values.disable_heartbeat:
            return Outcome.skip("heartbeat is disabled")
        accounts = hc.kube_api.list_service_accounts(
            opts.control_plane_namespace, label_selector=control_plane_components_selector(),
        )
        check_resources("ServiceAccounts", accounts, ["linkerd-heartbeat"], True)

    def unschedulable_pods():
        for pod in hc.kube_api.list_pods(opts.control_plane_namespace):
            for condition in (pod.status.conditions or []) if pod.status else []:
                if condition.reason == "Unschedulable":
                    raise MeshHealthError(f"{pod.metadata.name}: {condition.message}")

    def control_plane_pods_ready():
        ctx.control_plane_pods = hc.kube_api.list_pods(
            opts.control_plane_namespace, label_selector=CONTROLLER_COMPONENT_LABEL,
        )
        validate_control_plane_pods(ctx.control_plane_pods)

    def cluster_networks() -> str:
        values = ctx.values
        if values is None:
            # linkerd-existence may run without linkerd-config having been loaded
            _, values = fetch_current_configuration(hc.kube_api, opts.control_plane_namespace)
        return values.cluster_networks if values is not None else DEFAULT_CLUSTER_NETWORKS

    def self_check():
        return hc.public_api().self_check()

    def cni_enabled() -> bool:
        return ctx.values is not None and ctx.values.cni_enabled

    def cni_resource(kind: str, fetch):
        def body():
            if not cni_enabled():
                return Outcome.skip(CNI_DISABLED_SKIP_REASON)
            try:
                fetch()
            except Exception as exc:
                if is_not_found(exc):
                    raise MeshHealthError(f"missing {kind}: {CNI_RESOURCE_NAME}") from exc
                raise
            return None
        return body

    def cni_daemon_set():
        ctx.cni_daemon_set = hc.kube_api.get_daemon_set(opts.cni_namespace, CNI_RESOURCE_NAME)

    def cni_pods_on_all_nodes():
        if not cni_enabled():
            return Outcome.skip(CNI_DISABLED_SKIP_REASON)
        try:
            cni_daemon_set()
        except Exception as exc:
            if is_not_found(exc):
                raise MeshHealthError(f"missing DaemonSet: {CNI_RESOURCE_NAME}") from exc
            raise
        status = ctx.cni_daemon_set.status
        scheduled = status.desired_number_scheduled or 0
        ready = status.number_ready or 0
        if scheduled != ready:
            raise MeshHealthError(f"number ready: {ready}, number scheduled: {scheduled}")
        return None

    def kube_system_injection_disabled():
        if ctx.values is None or not ctx.values.high_availability:
            return Outcome.skip(NON_HA_SKIP_REASON)
        namespace = hc.kube_api.get_namespace("kube-system")
        if (namespace.metadata.labels or {}).get(ADMISSION_WEBHOOK_LABEL) != "disabled":
            raise MeshHealthError(
                f"kube-system namespace needs to have the label {ADMISSION_WEBHOOK_LABEL}: disabled "
                "if injector webhook failure policy is Fail"
            )
        return None

    def multiple_replicas():
        if ctx.values is None or not ctx.values.high_availability:
            return Outcome.skip(NON_HA_SKIP_REASON)
        check_min_replicas_available(hc.kube_api, opts.control_plane_namespace)
        return None

    ns = opts.control_plane_namespace
    return [
        Category(KUBERNETES_API_CHECKS).with_checks(
            new_checker("can initialize the client").with_hint_anchor("k8s-api").as_fatal()
            .with_check(hc.initialize_kube_api),
            new_checker("can query the Kubernetes API").with_hint_anchor("k8s-api").as_fatal()
            .with_check(query_api),
        ),
        Category(KUBERNETES_VERSION_CHECKS).with_checks(
            new_checker("is running the minimum Kubernetes API version").with_hint_anchor("k8s-version")
            .with_check(minimum_version),
        ),
        Category(PRE_INSTALL_CHECKS).with_checks(
            new_checker("control plane namespace does not already exist").with_hint_anchor("pre-ns")
            .with_check(lambda: check_namespace(hc.kube_api, ns, False)),
            new_checker("can create non-namespaced resources").with_hint_anchor("pre-k8s-cluster-k8s")
            .with_check(_all_of(
                can("create", "", "v1", "namespaces"),
                can("create", "rbac.authorization.k8s.io", "v1", "clusterroles"),
                can("create", "rbac.authorization.k8s.io", "v1", "clusterrolebindings"),
                can("create", "apiextensions.k8s.io", "v1", "customresourcedefinitions"),
                can("create", "admissionregistration.k8s.io", "v1", "mutatingwebhookconfigurations"),
                can("create", "admissionregistration.k8s.io", "v1", "validatingwebhookconfigurations"),
            )),
            new_checker("can create ServiceAccounts").with_hint_anchor("pre-k8s")
            .with_check(can("create", "", "v1", "serviceaccounts", ns)),
            new_checker("can create Services").with_hint_anchor("pre-k8s")
            .with_check(can("create", "", "v1", "services", ns)),
            new_checker("can create Deployments").with_hint_anchor("pre-k8s")
            .with_check(can("create", "apps", "v1", "deployments", ns)),
            new_checker("can create ConfigMaps").with_hint_anchor("pre-k8s")
            .with_check(can("create", "", "v1", "configmaps", ns)),
            new_checker("can create Secrets").with_hint_anchor("pre-k8s")
            .with_check(can("create", "", "v1", "secrets", ns)),
            new_checker("can read Secrets").with_hint_anchor("pre-k8s")
            .with_check(can("get", "", "v1", "secrets", ns)),
        ),
        Category(CONFIG_CHECKS).with_checks(
            new_checker("control plane Namespace exists").with_hint_anchor("l5d-existence-ns").as_fatal()
            .with_check(lambda: check_namespace(hc.kube_api, ns, True)),
            new_checker("control plane ClusterRoles exist").with_hint_anchor("l5d-existence-cr").as_fatal()
            .with_check(lambda: check_resources(
                "ClusterRoles",
                hc.kube_api.list_cluster_roles(label_selector=control_plane_components_selector()),
                expected_rbac_names(ns), True,
            )),
            new_checker("control plane ClusterRoleBindings exist").with_hint_anchor("l5d-existence-crb").as_fatal()
            .with_check(lambda: check_resources(
                "ClusterRoleBindings",
                hc.kube_api.list_cluster_role_bindings(label_selector=control_plane_components_selector()),
                expected_rbac_names(ns), True,
            )),
            new_checker("control plane ServiceAccounts exist").with_hint_anchor("l5d-existence-sa").as_fatal()
            .with_check(lambda: check_resources(
                "ServiceAccounts",
                hc.kube_api.list_service_accounts(ns, label_selector=control_plane_components_selector()),
                EXPECTED_SERVICE_ACCOUNT_NAMES, True,
            )),
        ),
        Category(CONTROL_PLANE_EXISTENCE_CHECKS).with_checks(
            new_checker("'linkerd-config' config map exists").with_hint_anchor("l5d-existence-linkerd-config")
            .as_fatal().with_check(load_config),
            new_checker("heartbeat ServiceAccount exist").with_hint_anchor("l5d-existence-sa").as_fatal()
            .with_check(heartbeat_service_account),
            new_checker("no unschedulable pods").with_hint_anchor("l5d-existence-unschedulable-pods")
            .with_retry_deadline(deadline).surface_errors_on_retry().as_warning()
            .with_check(unschedulable_pods),
            new_checker("control plane pods are ready").with_hint_anchor("l5d-api-control-ready")
            .with_retry_deadline(deadline).surface_errors_on_retry().as_fatal()
            .with_check(control_plane_pods_ready),
            new_checker("cluster networks contains all node podCIDRs").with_hint_anchor("l5d-cluster-networks-cidr")
            .with_check(lambda: check_node_pod_cidrs(hc.kube_api.list_nodes(), cluster_networks())),
            new_checker("cluster networks contains all pods").with_hint_anchor("l5d-cluster-networks-pods")
            .with_check(lambda: check_pod_ips(hc.kube_api.list_pods(), cluster_networks())),
            new_checker("cluster networks contains all services").with_hint_anchor("l5d-cluster-networks-pods")
            .with_check(lambda: check_service_ips(hc.kube_api.list_services(), cluster_networks())),
        ),
        Category(API_CHECKS).with_checks(
            new_checker("can query the control plane API").with_hint_anchor("l5d-api-control-api")
            .with_retry_deadline(deadline).as_fatal()
            .with_check_rpc(self_check),
        ),
        Category(CNI_PLUGIN_CHECKS).with_checks(
            new_checker("cni plugin ConfigMap exists").with_hint_anchor("cni-plugin-cm-exists").as_fatal()
            .with_check(cni_resource("ConfigMap", lambda: hc.kube_api.get_config_map(opts.cni_namespace, CNI_CONFIG_MAP_NAME))),
            new_checker("cni plugin ClusterRole exists").with_hint_anchor("cni-plugin-cr-exists").as_fatal()
            .with_check(cni_resource("ClusterRole", lambda: hc.kube_api.get_cluster_role(CNI_RESOURCE_NAME))),
            new_checker("cni plugin ClusterRoleBinding exists").with_hint_anchor("cni-plugin-crb-exists").as_fatal()
            .with_check(cni_resource("ClusterRoleBinding", lambda: hc.kube_api.get_cluster_role_binding(CNI_RESOURCE_NAME))),
            new_checker("cni plugin ServiceAccount exists").with_hint_anchor("cni-plugin-sa-exists").as_fatal()
            .with_check(cni_resource("ServiceAccount", lambda: hc.kube_api.get_service_account(opts.cni_namespace, CNI_RESOURCE_NAME))),
            new_checker("cni plugin DaemonSet exists").with_hint_anchor("cni-plugin-ds-exists").as_fatal()
            .with_check(cni_resource("DaemonSet", cni_daemon_set)),
            new_checker("cni plugin pod is running on all nodes").with_hint_anchor("cni-plugin-ready")
            .with_retry_deadline(deadline).surface_errors_on_retry().as_fatal()
            .with_check(cni_pods_on_all_nodes),
        ),
        Category(HA_CHECKS).with_checks(
            new_checker("pod injection disabled on kube-system").with_hint_anchor("l5d-injection-disabled")
            .as_warning().with_check(kube_system_injection_disabled),
            new_checker("multiple replicas of control plane pods").with_hint_anchor("l5d-control-plane-replicas")
            .with_retry_deadline(deadline).as_warning().with_check(multiple_replicas),
        ),
    ]


def _all_of(*bodies):
    """Run each body, collecting failures into one error."""
    def body():
        errors = []
        for check in bodies:
            try:
                check()
            except MeshHealthError as exc:
                errors.append(str(exc))
        if errors:
            raise MeshHealthError("\n    ".join(errors))
    return body
