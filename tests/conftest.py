# SPDX-License-Identifier: MIT
"""
Shared fixtures: certificate factories and an in-memory cluster.

The fake cluster speaks the same method surface as
``mesh_health.kube.KubernetesAPI`` and stores ``kubernetes.client`` model
objects, so check bodies see exactly the shapes the real client returns.
"""

from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID
from kubernetes import client
from kubernetes.client import ApiException

from mesh_health.config import (
    ADDONS_CONFIG_MAP_NAME,
    CONFIG_MAP_NAME,
    CONTROLLER_COMPONENT_LABEL,
    CONTROLLER_NS_LABEL,
    EXPECTED_SERVICE_ACCOUNT_NAMES,
    IDENTITY_ISSUER_SECRET_NAME,
    PROXY_INJECTOR_TLS_SECRET_NAME,
    PROXY_INJECTOR_WEBHOOK_CONFIG_NAME,
    SP_VALIDATOR_OLD_TLS_SECRET_NAME,
    SP_VALIDATOR_WEBHOOK_CONFIG_NAME,
    TAP_API_SERVICE_NAME,
    TAP_TLS_SECRET_NAME,
    Options,
)
from mesh_health.errors import MeshHealthError
from mesh_health.publicapi import SelfCheckResult

NOW = datetime.now(timezone.utc)


# ============================================================================
# CERTIFICATES
# ============================================================================

def make_key(kind: str = "ec", size: int = 2048):
    if kind == "rsa":
        return rsa.generate_private_key(public_exponent=65537, key_size=size)
    if kind == "p384":
        return ec.generate_private_key(ec.SECP384R1())
    return ec.generate_private_key(ec.SECP256R1())


def make_cert(cn: str, key=None, issuer=None, issuer_key=None, ca: bool = False,
              dns: list[str] | None = None, not_before: datetime | None = None,
              not_after: datetime | None = None, serial: int | None = None):
    """Build a certificate; self-signed unless ``issuer``/``issuer_key`` are given."""
    key = key or make_key()
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    issuer_name = issuer.subject if issuer is not None else subject
    signing_key = issuer_key or key
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(serial or x509.random_serial_number())
        .not_valid_before(not_before or NOW - timedelta(days=1))
        .not_valid_after(not_after or NOW + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if dns:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in dns]), critical=False,
        )
    return builder.sign(signing_key, hashes.SHA256()), key


def pem(*certs: x509.Certificate) -> str:
    return "".join(c.public_bytes(serialization.Encoding.PEM).decode() for c in certs)


def key_pem(key) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


def b64(value: str | bytes) -> str:
    raw = value.encode() if isinstance(value, str) else value
    return base64.b64encode(raw).decode()


@pytest.fixture
def trust_root():
    """Self-signed trust anchor plus an issuer CA it signed."""
    anchor, anchor_key = make_cert("root.linkerd.cluster.local", ca=True)
    issuer, issuer_key = make_cert(
        "identity.linkerd.cluster.local", issuer=anchor, issuer_key=anchor_key, ca=True,
    )
    return SimpleNamespace(anchor=anchor, anchor_key=anchor_key, issuer=issuer, issuer_key=issuer_key)


# ============================================================================
# FAKE CLUSTER
# ============================================================================

def not_found(kind: str, name: str) -> ApiException:
    exc = ApiException(status=404, reason="Not Found")
    exc.body = f'{kind} "{name}" not found'
    return exc


def meta(name: str, namespace: str | None = None, labels=None, annotations=None) -> client.V1ObjectMeta:
    return client.V1ObjectMeta(name=name, namespace=namespace, labels=labels, annotations=annotations)


def matches_labels(obj, selector: str | None) -> bool:
    if not selector:
        return True
    labels = obj.metadata.labels or {}
    for term in selector.split(","):
        term = term.strip()
        if term.startswith("!"):
            if term[1:] in labels:
                return False
        elif "=" in term:
            key, value = term.split("=", 1)
            if labels.get(key) != value:
                return False
        elif term not in labels:
            return False
    return True


def matches_fields(secret, selector: str | None) -> bool:
    if not selector:
        return True
    key, value = selector.split("=", 1)
    return key == "type" and secret.type == value


class FakeKubeAPI:
    """In-memory cluster with the ``KubernetesAPI`` method surface."""

    def __init__(self, git_version: str = "v1.28.3"):
        self.git_version = git_version
        self.namespaces: dict[str, client.V1Namespace] = {}
        self.nodes: list = []
        self.pods: list = []
        self.services: list = []
        self.endpoints: dict[tuple[str, str], client.V1Endpoints] = {}
        self.config_maps: dict[tuple[str, str], client.V1ConfigMap] = {}
        self.secrets: dict[tuple[str, str], client.V1Secret] = {}
        self.service_accounts: list = []
        self.deployments: list = []
        self.daemon_sets: dict[tuple[str, str], client.V1DaemonSet] = {}
        self.cluster_roles: dict[str, client.V1ClusterRole] = {}
        self.cluster_role_bindings: dict[str, client.V1ClusterRoleBinding] = {}
        self.roles: dict[tuple[str, str], client.V1Role] = {}
        self.mutating_webhooks: dict[str, client.V1MutatingWebhookConfiguration] = {}
        self.validating_webhooks: dict[str, client.V1ValidatingWebhookConfiguration] = {}
        self.api_services: dict[str, client.V1APIService] = {}
        self.custom_objects: dict[tuple[str, str, str], list[dict]] = {}
        self.denied: set[tuple[str, str]] = set()
        self.unreachable = False

    # -- population helpers ---------------------------------------------

    def add_namespace(self, name: str, labels=None) -> None:
        self.namespaces[name] = client.V1Namespace(metadata=meta(name, labels=labels))

    def add_config_map(self, namespace: str, name: str, data: dict[str, str]) -> None:
        self.config_maps[(namespace, name)] = client.V1ConfigMap(metadata=meta(name, namespace), data=data)

    def add_secret(self, namespace: str, name: str, data: dict[str, str | bytes],
                   type: str = "Opaque", annotations=None) -> None:
        self.secrets[(namespace, name)] = client.V1Secret(
            metadata=meta(name, namespace, annotations=annotations),
            data={k: b64(v) for k, v in data.items()},
            type=type,
        )

    def add_deployment(self, namespace: str, name: str, available: int = 1, labels=None) -> None:
        pod_labels = dict(labels or {"app": name})
        self.deployments.append(client.V1Deployment(
            metadata=meta(name, namespace, labels=labels),
            spec=client.V1DeploymentSpec(
                replicas=available,
                selector=client.V1LabelSelector(match_labels=pod_labels),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=pod_labels),
                    spec=client.V1PodSpec(containers=[client.V1Container(name=name, image="img")]),
                ),
            ),
            status=client.V1DeploymentStatus(available_replicas=available),
        ))

    def add_pod(self, namespace: str, name: str, labels=None, annotations=None, phase: str = "Running",
                containers: dict[str, bool] | None = None, pod_ip: str | None = None,
                host_network: bool = False) -> None:
        """``containers`` maps container name to readiness."""
        containers = containers or {}
        self.pods.append(client.V1Pod(
            metadata=meta(name, namespace, labels, annotations),
            spec=client.V1PodSpec(
                containers=[client.V1Container(name=c, image="img") for c in containers],
                host_network=host_network,
            ),
            status=client.V1PodStatus(
                phase=phase,
                pod_ip=pod_ip,
                container_statuses=[
                    client.V1ContainerStatus(name=c, image="img", image_id="img@sha", ready=ready, restart_count=0)
                    for c, ready in containers.items()
                ],
            ),
        ))

    def add_service(self, namespace: str, name: str, labels=None, annotations=None, cluster_ip=None) -> None:
        spec = client.V1ServiceSpec(cluster_ip=cluster_ip) if cluster_ip else None
        self.services.append(client.V1Service(metadata=meta(name, namespace, labels, annotations), spec=spec))

    def add_node(self, name: str, pod_cidr: str | None = None) -> None:
        self.nodes.append(client.V1Node(metadata=meta(name), spec=client.V1NodeSpec(pod_cidr=pod_cidr)))

    def add_endpoints(self, namespace: str, name: str, ips: list[str]) -> None:
        subsets = [client.V1EndpointSubset(addresses=[client.V1EndpointAddress(ip=ip) for ip in ips])] if ips else None
        self.endpoints[(namespace, name)] = client.V1Endpoints(metadata=meta(name, namespace), subsets=subsets)

    def add_role(self, namespace: str, name: str, rules: list[client.V1PolicyRule]) -> None:
        self.roles[(namespace, name)] = client.V1Role(metadata=meta(name, namespace), rules=rules)

    def add_cluster_role(self, name: str, rules=None, labels=None) -> None:
        self.cluster_roles[name] = client.V1ClusterRole(metadata=meta(name, labels=labels), rules=rules)

    # -- KubernetesAPI surface --------------------------------------------

    def _get(self, store: dict, key, kind: str):
        if key not in store:
            raise not_found(kind, key if isinstance(key, str) else key[-1])
        return store[key]

    def get_version_info(self):
        if self.unreachable:
            raise MeshHealthError("connection refused")
        return SimpleNamespace(git_version=self.git_version)

    def resource_authz(self, namespace, verb, group, version, resource):
        if (verb, resource) in self.denied:
            raise MeshHealthError(f"not authorized to access {resource}")

    def get_namespace(self, name):
        return self._get(self.namespaces, name, "namespaces")

    def namespace_exists(self, name):
        return name in self.namespaces

    def list_nodes(self):
        return list(self.nodes)

    def list_pods(self, namespace=None, label_selector=None):
        return [p for p in self.pods
                if (not namespace or p.metadata.namespace == namespace) and matches_labels(p, label_selector)]

    def list_services(self, namespace=None, label_selector=None):
        return [s for s in self.services
                if (not namespace or s.metadata.namespace == namespace) and matches_labels(s, label_selector)]

    def get_endpoints(self, namespace, name):
        return self._get(self.endpoints, (namespace, name), "endpoints")

    def get_config_map(self, namespace, name):
        return self._get(self.config_maps, (namespace, name), "configmaps")

    def get_secret(self, namespace, name):
        return self._get(self.secrets, (namespace, name), "secrets")

    def get_secret_data(self, namespace, name):
        secret = self.get_secret(namespace, name)
        return {k: base64.b64decode(v) for k, v in (secret.data or {}).items()}

    def list_secrets(self, namespace=None, field_selector=None):
        return [s for (ns, _), s in self.secrets.items()
                if (not namespace or ns == namespace) and matches_fields(s, field_selector)]

    def list_service_accounts(self, namespace, label_selector=None):
        return [a for a in self.service_accounts
                if a.metadata.namespace == namespace and matches_labels(a, label_selector)]

    def get_service_account(self, namespace, name):
        for account in self.service_accounts:
            if account.metadata.namespace == namespace and account.metadata.name == name:
                return account
        raise not_found("serviceaccounts", name)

    def list_deployments(self, namespace=None, label_selector=None):
        return [d for d in self.deployments
                if (not namespace or d.metadata.namespace == namespace) and matches_labels(d, label_selector)]

    def get_deployment(self, namespace, name):
        for deployment in self.deployments:
            if deployment.metadata.namespace == namespace and deployment.metadata.name == name:
                return deployment
        raise not_found("deployments", name)

    def get_daemon_set(self, namespace, name):
        return self._get(self.daemon_sets, (namespace, name), "daemonsets")

    def list_cluster_roles(self, label_selector=None):
        return [r for r in self.cluster_roles.values() if matches_labels(r, label_selector)]

    def get_cluster_role(self, name):
        return self._get(self.cluster_roles, name, "clusterroles")

    def list_cluster_role_bindings(self, label_selector=None):
        return [b for b in self.cluster_role_bindings.values() if matches_labels(b, label_selector)]

    def get_cluster_role_binding(self, name):
        return self._get(self.cluster_role_bindings, name, "clusterrolebindings")

    def get_role(self, namespace, name):
        return self._get(self.roles, (namespace, name), "roles")

    def get_mutating_webhook_configuration(self, name):
        return self._get(self.mutating_webhooks, name, "mutatingwebhookconfigurations")

    def get_validating_webhook_configuration(self, name):
        return self._get(self.validating_webhooks, name, "validatingwebhookconfigurations")

    def get_api_service(self, name):
        return self._get(self.api_services, name, "apiservices")

    def list_custom_objects(self, group, version, plural):
        key = (group, version, plural)
        if key not in self.custom_objects:
            raise not_found(plural, group)
        return list(self.custom_objects[key])


class FakePublicAPI:
    """Public API stand-in; ``self_check_responses`` are served in order, the last one repeats."""

    def __init__(self, self_check_responses=None, gateways=None):
        self.self_check_responses = list(self_check_responses or [[
            SelfCheckResult("linkerd-api", "control plane can talk to Kubernetes"),
            SelfCheckResult("linkerd-api", "control plane can talk to Prometheus"),
        ]])
        self.gateway_statuses = list(gateways or [])
        self.self_check_calls = 0

    def self_check(self):
        index = min(self.self_check_calls, len(self.self_check_responses) - 1)
        self.self_check_calls += 1
        response = self.self_check_responses[index]
        if isinstance(response, Exception):
            raise response
        return response

    def gateways(self, time_window="1m"):
        return self.gateway_statuses


# ============================================================================
# HEALTHY CONTROL PLANE
# ============================================================================

def _webhook_tls(namespace: str, service: str):
    ca, ca_key = make_cert(f"{service}.{namespace}.svc", ca=True)
    leaf, leaf_key = make_cert(
        f"{service}.{namespace}.svc", issuer=ca, issuer_key=ca_key, dns=[f"{service}.{namespace}.svc"],
    )
    return ca, leaf, leaf_key


def _webhook(name: str, ca_bundle: str, cls):
    return cls(
        name=name,
        admission_review_versions=["v1"],
        side_effects="None",
        client_config=client.AdmissionregistrationV1WebhookClientConfig(ca_bundle=ca_bundle),
    )


def _ready_pod(namespace: str, component: str) -> client.V1Pod:
    return client.V1Pod(
        metadata=meta(f"{component}-abc12", namespace, labels={CONTROLLER_COMPONENT_LABEL: component}),
        status=client.V1PodStatus(
            phase="Running",
            container_statuses=[client.V1ContainerStatus(
                name=component.removeprefix("linkerd-"), image="img", image_id="img@sha",
                ready=True, restart_count=0,
            )],
        ),
    )


def build_control_plane(kube: FakeKubeAPI, root, namespace: str = "linkerd", values: dict | None = None) -> None:
    """Populate ``kube`` with a healthy control plane trusting ``root.anchor``."""
    labels = {CONTROLLER_NS_LABEL: namespace}
    kube.add_namespace(namespace)
    kube.add_namespace("kube-system")
    for suffix in ("identity", "proxy-injector"):
        name = f"linkerd-{namespace}-{suffix}"
        kube.add_cluster_role(name, labels=labels)
        kube.cluster_role_bindings[name] = client.V1ClusterRoleBinding(
            metadata=meta(name, labels=labels),
            role_ref=client.V1RoleRef(api_group="rbac.authorization.k8s.io", kind="ClusterRole", name=name),
        )
    for name in EXPECTED_SERVICE_ACCOUNT_NAMES + ["linkerd-heartbeat"]:
        kube.service_accounts.append(client.V1ServiceAccount(metadata=meta(name, namespace, labels=labels)))

    config_values = {"identityTrustAnchorsPEM": pem(root.anchor), "identity": {"issuer": {"scheme": "linkerd.io/tls"}}}
    config_values.update(values or {})
    kube.add_config_map(namespace, CONFIG_MAP_NAME, {"values": yaml.safe_dump(config_values)})
    kube.add_config_map(namespace, ADDONS_CONFIG_MAP_NAME, {"values": yaml.safe_dump({"grafana": {"enabled": False}})})

    for component in ("linkerd-destination", "linkerd-identity", "linkerd-proxy-injector"):
        kube.pods.append(_ready_pod(namespace, component))
        kube.add_deployment(namespace, component, available=1, labels={CONTROLLER_COMPONENT_LABEL: component})

    kube.add_secret(namespace, IDENTITY_ISSUER_SECRET_NAME, {
        "crt.pem": pem(root.issuer), "key.pem": key_pem(root.issuer_key),
    })

    ca, leaf, leaf_key = _webhook_tls(namespace, "linkerd-proxy-injector")
    kube.add_secret(namespace, PROXY_INJECTOR_TLS_SECRET_NAME, {"tls.crt": pem(leaf), "tls.key": key_pem(leaf_key)})
    kube.mutating_webhooks[PROXY_INJECTOR_WEBHOOK_CONFIG_NAME] = client.V1MutatingWebhookConfiguration(
        metadata=meta(PROXY_INJECTOR_WEBHOOK_CONFIG_NAME),
        webhooks=[_webhook("linkerd-proxy-injector.linkerd.io", b64(pem(ca)), client.V1MutatingWebhook)],
    )

    # sp-validator only has the legacy secret layout
    ca, leaf, leaf_key = _webhook_tls(namespace, "linkerd-sp-validator")
    kube.add_secret(namespace, SP_VALIDATOR_OLD_TLS_SECRET_NAME, {"crt.pem": pem(leaf), "key.pem": key_pem(leaf_key)})
    kube.validating_webhooks[SP_VALIDATOR_WEBHOOK_CONFIG_NAME] = client.V1ValidatingWebhookConfiguration(
        metadata=meta(SP_VALIDATOR_WEBHOOK_CONFIG_NAME),
        webhooks=[_webhook("linkerd-sp-validator.linkerd.io", b64(pem(ca)), client.V1ValidatingWebhook)],
    )

    ca, leaf, leaf_key = _webhook_tls(namespace, "linkerd-tap")
    kube.add_secret(namespace, TAP_TLS_SECRET_NAME, {"tls.crt": pem(leaf), "tls.key": key_pem(leaf_key)})
    kube.api_services[TAP_API_SERVICE_NAME] = client.V1APIService(
        metadata=meta(TAP_API_SERVICE_NAME),
        spec=client.V1APIServiceSpec(group_priority_minimum=1000, version_priority=100, ca_bundle=b64(pem(ca))),
        status=client.V1APIServiceStatus(conditions=[client.V1APIServiceCondition(type="Available", status="True")]),
    )


@pytest.fixture
def kube():
    return FakeKubeAPI()


@pytest.fixture
def public_api():
    return FakePublicAPI()


@pytest.fixture
def healthy_kube(kube, trust_root):
    build_control_plane(kube, trust_root)
    return kube


@pytest.fixture
def make_options(public_api):
    """Options wired to fake collaborators; retries are disabled unless a deadline is passed."""
    def _make(kube_api, remotes: dict | None = None, **overrides) -> Options:
        remotes = remotes or {}
        defaults = dict(
            kube_api_factory=lambda: kube_api,
            remote_api_factory=lambda kubeconfig: remotes[kubeconfig],
            api_client_factory=lambda _kube, _ns: public_api,
            retry_window=0,
            request_timeout=5,
        )
        defaults.update(overrides)
        return Options(**defaults)
    return _make


class Recorder:
    """Observer that records results."""

    def __init__(self):
        self.results = []

    def __call__(self, result):
        self.results.append(result)

    @property
    def descriptions(self):
        return [r.description for r in self.results]

    def by_description(self, description):
        return [r for r in self.results if r.description.split("\n", 1)[0] == description]


@pytest.fixture
def recorder():
    return Recorder()
