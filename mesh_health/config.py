# SPDX-License-Identifier: MIT

"""Options, control-plane configuration and well-known names."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import yaml

logger = logging.getLogger(__name__)


# =====================================================================
# Well-known names
# =====================================================================

DEFAULT_CONTROL_PLANE_NAMESPACE = "linkerd"
DEFAULT_CNI_NAMESPACE = "linkerd-cni"
DEFAULT_HINT_BASE_URL = "https://linkerd.io/2/checks/#"

REQUEST_TIMEOUT = 30.0
RETRY_WINDOW = 5.0

CONTROLLER_COMPONENT_LABEL = "linkerd.io/control-plane-component"
CONTROLLER_NS_LABEL = "linkerd.io/control-plane-ns"
CNI_RESOURCE_LABEL = "linkerd.io/cni-resource"

CONFIG_MAP_NAME = "linkerd-config"
CONFIG_MAP_VALUES_KEY = "values"

IDENTITY_ISSUER_SECRET_NAME = "linkerd-identity-issuer"
IDENTITY_ISSUER_SCHEME_LINKERD = "linkerd.io/tls"
IDENTITY_ISSUER_SCHEME_KUBERNETES = "kubernetes.io/tls"
IDENTITY_ISSUER_CRT_NAME = "crt.pem"
IDENTITY_ISSUER_KEY_NAME = "key.pem"
IDENTITY_ISSUER_TRUST_ANCHORS_NAME_EXTERNAL = "ca.crt"

CERT_KEY_NAME = "tls.crt"
KEY_KEY_NAME = "tls.key"
CERT_OLD_KEY_NAME = "crt.pem"
KEY_OLD_KEY_NAME = "key.pem"

PROXY_INJECTOR_WEBHOOK_CONFIG_NAME = "linkerd-proxy-injector-webhook-config"
SP_VALIDATOR_WEBHOOK_CONFIG_NAME = "linkerd-sp-validator-webhook-config"
TAP_API_SERVICE_NAME = "v1alpha1.tap.linkerd.io"

PROXY_INJECTOR_TLS_SECRET_NAME = "linkerd-proxy-injector-k8s-tls"
PROXY_INJECTOR_OLD_TLS_SECRET_NAME = "linkerd-proxy-injector-tls"
SP_VALIDATOR_TLS_SECRET_NAME = "linkerd-sp-validator-k8s-tls"
SP_VALIDATOR_OLD_TLS_SECRET_NAME = "linkerd-sp-validator-tls"
TAP_TLS_SECRET_NAME = "linkerd-tap-k8s-tls"
TAP_OLD_TLS_SECRET_NAME = "linkerd-tap-tls"

CNI_RESOURCE_NAME = "linkerd-cni"
CNI_CONFIG_MAP_NAME = "linkerd-cni-config"

PROXY_CONTAINER_NAME = "linkerd-proxy"
DEFAULT_CLUSTER_NETWORKS = "10.0.0.0/8,100.64.0.0/10,172.16.0.0/12,192.168.0.0/16"

# Add-ons
ADDONS_CONFIG_MAP_NAME = "linkerd-config-addons"
PROMETHEUS_ADDON = "prometheus"
GRAFANA_ADDON = "grafana"
TRACING_ADDON = "tracing"

HA_CONTROL_PLANE_COMPONENTS = ["linkerd-destination", "linkerd-identity", "linkerd-proxy-injector"]
EXPECTED_SERVICE_ACCOUNT_NAMES = ["linkerd-destination", "linkerd-identity", "linkerd-proxy-injector"]

MINIMUM_K8S_VERSION = (1, 22, 0)

# Multicluster
SERVICE_MIRROR_COMPONENT_NAME = "linkerd-service-mirror"
SERVICE_MIRROR_CLUSTER_ROLE_NAME = "linkerd-service-mirror-access-local-resources"
SERVICE_MIRROR_ROLE_NAME = "linkerd-service-mirror-read-remote-creds"
MIRROR_SECRET_TYPE = "mirror.linkerd.io/remote-kubeconfig"
MIRROR_KUBECONFIG_KEY = "kubeconfig"
REMOTE_CLUSTER_NAME_LABEL = "mirror.linkerd.io/cluster-name"
REMOTE_CLUSTER_DOMAIN_ANNOTATION = "mirror.linkerd.io/remote-cluster-domain"
REMOTE_CLUSTER_L5D_NS_ANNOTATION = "mirror.linkerd.io/remote-cluster-l5d-ns"
MIRRORED_RESOURCE_LABEL = "mirror.linkerd.io/mirrored-service"
MIRRORED_GATEWAY_LABEL = "mirror.linkerd.io/mirrored-gateway"
EXPORTED_LABEL = "mirror.linkerd.io/exported"
GATEWAY_NAME_ANNOTATION = "mirror.linkerd.io/gateway-name"

TRAFFIC_SPLIT_GROUP = "split.smi-spec.io"
TRAFFIC_SPLIT_VERSION = "v1alpha1"
TRAFFIC_SPLIT_PLURAL = "trafficsplits"


def control_plane_components_selector() -> str:
    return f"{CONTROLLER_NS_LABEL},!{CNI_RESOURCE_LABEL}"


# =====================================================================
# Orchestrator options
# =====================================================================

@dataclass
class Options:
    control_plane_namespace: str = DEFAULT_CONTROL_PLANE_NAMESPACE
    cni_namespace: str = DEFAULT_CNI_NAMESPACE
    # Empty means proxies in every namespace.
    data_plane_namespace: str = ""
    multicluster: bool = False
    retry_deadline: datetime | None = None
    hint_base_url: str = DEFAULT_HINT_BASE_URL
    request_timeout: float = REQUEST_TIMEOUT
    retry_window: float = RETRY_WINDOW
    kubeconfig: str | None = None
    kube_context: str | None = None
    # Collaborator factories; None means the kubernetes-backed defaults.
    kube_api_factory: Callable[[], Any] | None = None
    remote_api_factory: Callable[[bytes], Any] | None = None
    api_client_factory: Callable[[Any, str], Any] | None = None


# =====================================================================
# Control-plane configuration
# =====================================================================

@dataclass
class MeshValues:
    cluster_domain: str = "cluster.local"
    identity_trust_domain: str = "cluster.local"
    identity_trust_anchors_pem: str = ""
    issuer_scheme: str = IDENTITY_ISSUER_SCHEME_LINKERD
    high_availability: bool = False
    cni_enabled: bool = False
    disable_heartbeat: bool = False
    cluster_networks: str = DEFAULT_CLUSTER_NETWORKS
    # Every top-level block carrying an ``enabled`` key, keyed by add-on name.
    addons: dict[str, dict[str, Any]] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> MeshValues:
        raw = remove_global_field(raw)
        identity = raw.get("identity") or {}
        issuer = identity.get("issuer") or {}
        addons = {
            name: value
            for name, value in raw.items()
            if isinstance(value, dict) and "enabled" in value
        }
        return cls(
            cluster_domain=raw.get("clusterDomain") or "cluster.local",
            identity_trust_domain=raw.get("identityTrustDomain") or raw.get("clusterDomain") or "cluster.local",
            identity_trust_anchors_pem=raw.get("identityTrustAnchorsPEM") or "",
            issuer_scheme=issuer.get("scheme") or IDENTITY_ISSUER_SCHEME_LINKERD,
            high_availability=bool(raw.get("highAvailability") or raw.get("enablePodAntiAffinity")),
            cni_enabled=bool(raw.get("cniEnabled")),
            disable_heartbeat=bool(raw.get("disableHeartBeat")),
            cluster_networks=raw.get("clusterNetworks") or DEFAULT_CLUSTER_NETWORKS,
            addons=addons,
            raw=raw,
        )

    def addon_enabled(self, name: str) -> bool:
        return bool(self.addons.get(name, {}).get("enabled"))

    def enabled_addons(self) -> dict[str, dict[str, Any]]:
        return {name: block for name, block in self.addons.items() if block.get("enabled")}


def remove_global_field(raw: dict[str, Any]) -> dict[str, Any]:
    """Fold a legacy top-level ``global`` block into the top level."""
    if "global" not in raw:
        return raw
    merged = dict(raw)
    global_values = merged.pop("global") or {}
    for key, value in global_values.items():
        merged.setdefault(key, value)
    return merged


def parse_values(raw_values: str) -> MeshValues | None:
    if not raw_values.strip():
        return None
    loaded = yaml.safe_load(raw_values)
    if not isinstance(loaded, dict):
        raise ValueError(f"{CONFIG_MAP_NAME} values must be a mapping, got {type(loaded).__name__}")
    return MeshValues.from_dict(loaded)


def fetch_current_configuration(kube_api, namespace: str):
    """Return the ``linkerd-config`` ConfigMap and its parsed values (or None)."""
    config_map = kube_api.get_config_map(namespace, CONFIG_MAP_NAME)
    raw_values = (config_map.data or {}).get(CONFIG_MAP_VALUES_KEY, "")
    values = parse_values(raw_values)
    logger.debug("Loaded %s/%s (values present: %s)", namespace, CONFIG_MAP_NAME, values is not None)
    return config_map, values
