# SPDX-License-Identifier: MIT

"""Multicluster checks.

Multicluster is opt-in by discovery: when no service mirror controller is
found, and the operator did not ask for multicluster checks, every check in
this category is skipped.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any

from cryptography import x509

from mesh_health.config import (
    CONTROLLER_COMPONENT_LABEL,
    DEFAULT_CONTROL_PLANE_NAMESPACE,
    EXPORTED_LABEL,
    GATEWAY_NAME_ANNOTATION,
    MIRROR_KUBECONFIG_KEY,
    MIRROR_SECRET_TYPE,
    MIRRORED_GATEWAY_LABEL,
    MIRRORED_RESOURCE_LABEL,
    REMOTE_CLUSTER_DOMAIN_ANNOTATION,
    REMOTE_CLUSTER_L5D_NS_ANNOTATION,
    REMOTE_CLUSTER_NAME_LABEL,
    SERVICE_MIRROR_CLUSTER_ROLE_NAME,
    SERVICE_MIRROR_COMPONENT_NAME,
    SERVICE_MIRROR_ROLE_NAME,
    TRAFFIC_SPLIT_GROUP,
    TRAFFIC_SPLIT_PLURAL,
    TRAFFIC_SPLIT_VERSION,
    fetch_current_configuration,
)
from mesh_health.context import RemoteCluster
from mesh_health.errors import MeshHealthError, is_not_found, join_errors
from mesh_health.healthcheck import MULTICLUSTER_CHECKS
from mesh_health.models import Category, Outcome, new_checker
from mesh_health.tls import decode_pem_certificates, same_certificate

logger = logging.getLogger(__name__)

NOT_SOURCE_CLUSTER_SKIP_REASON = "not checking multicluster: no service mirror controller found"
REMOTE_SERVICE_VERBS = ("get", "list", "watch")


@dataclass(frozen=True)
class ExpectedPolicy:
    resources: frozenset[str]
    verbs: frozenset[str]

    @classmethod
    def of(cls, resources: list[str], verbs: list[str]) -> ExpectedPolicy:
        return cls(frozenset(resources), frozenset(verbs))


EXPECTED_CLUSTER_ROLE_POLICIES = [
    ExpectedPolicy.of(["endpoints", "services"], ["list", "get", "watch", "create", "delete", "update"]),
    ExpectedPolicy.of(["namespaces"], ["create", "list", "get", "watch"]),
]

EXPECTED_ROLE_POLICIES = [
    ExpectedPolicy.of(["secrets"], ["list", "get", "watch"]),
]


def service_mirror_selector() -> str:
    return f"{CONTROLLER_COMPONENT_LABEL}={SERVICE_MIRROR_COMPONENT_NAME}"


def _joined(values) -> str:
    return ",".join(sorted(values))


# =====================================================================
# Service mirror controller
# =====================================================================

def check_service_mirror_controllers(deployments: list[Any]) -> None:
    if len(deployments) > 1:
        raise MeshHealthError("too many service mirror controller deployments")
    errors = []
    for deployment in deployments:
        if not (deployment.status and deployment.status.available_replicas):
            errors.append(
                f"service mirror controller is not available: "
                f"{deployment.metadata.namespace}/{deployment.metadata.name}"
            )
    if errors:
        raise join_errors(errors, 0)


# =====================================================================
# RBAC comparison
# =====================================================================

def find_rule(rules: list[Any], resources: frozenset[str]):
    """The rule whose resource set equals ``resources``, else the first superset."""
    superset = None
    for rule in rules or []:
        actual = frozenset(rule.resources or [])
        if actual == resources:
            return rule
        if superset is None and resources < actual:
            superset = rule
    return superset


def compare_rules(kind: str, name: str, rules: list[Any], expected: list[ExpectedPolicy]) -> list[str]:
    """Every gap between ``rules`` and ``expected``, one line per policy."""
    problems = []
    for policy in expected:
        rule = find_rule(rules, policy.resources)
        if rule is None:
            problems.append(f"* {kind} {name}: no rule for resources [{_joined(policy.resources)}]")
            continue
        verbs = frozenset(rule.verbs or [])
        if verbs != policy.verbs:
            problems.append(
                f"* {kind} {name}: resources [{_joined(policy.resources)}]: "
                f"expected verbs {_joined(policy.verbs)}, got {_joined(verbs)}"
            )
    return problems


def check_service_mirror_rbac(kube_api, namespace: str) -> None:
    problems = []
    lookups = [
        ("ClusterRole", SERVICE_MIRROR_CLUSTER_ROLE_NAME,
         lambda: kube_api.get_cluster_role(SERVICE_MIRROR_CLUSTER_ROLE_NAME), EXPECTED_CLUSTER_ROLE_POLICIES),
        ("Role", SERVICE_MIRROR_ROLE_NAME,
         lambda: kube_api.get_role(namespace, SERVICE_MIRROR_ROLE_NAME), EXPECTED_ROLE_POLICIES),
    ]
    for kind, name, fetch, expected in lookups:
        try:
            role = fetch()
        except Exception as exc:
            if not is_not_found(exc):
                raise
            problems.append(f"* missing {kind} {name}")
            continue
        problems.extend(compare_rules(kind, name, role.rules, expected))
    if problems:
        raise MeshHealthError("Service mirror controller is missing permissions:\n" + str(join_errors(problems, 1)))


# =====================================================================
# Remote clusters
# =====================================================================

def parse_remote_cluster_secret(secret) -> RemoteCluster:
    annotations = secret.metadata.annotations or {}
    cluster_name = annotations.get(REMOTE_CLUSTER_NAME_LABEL)
    if not cluster_name:
        raise MeshHealthError(f"secret of type {MIRROR_SECRET_TYPE} should contain annotation {REMOTE_CLUSTER_NAME_LABEL}")
    encoded = (secret.data or {}).get(MIRROR_KUBECONFIG_KEY)
    if not encoded:
        raise MeshHealthError(f"secret should contain remote kubeconfig under key {MIRROR_KUBECONFIG_KEY}")
    return RemoteCluster(
        cluster_name=cluster_name,
        namespace=annotations.get(REMOTE_CLUSTER_L5D_NS_ANNOTATION) or DEFAULT_CONTROL_PLANE_NAMESPACE,
        secret_name=secret.metadata.name,
        secret_namespace=secret.metadata.namespace or "",
        cluster_domain=annotations.get(REMOTE_CLUSTER_DOMAIN_ANNOTATION) or "cluster.local",
        kubeconfig=base64.b64decode(encoded),
    )


def list_remote_cluster_secrets(kube_api) -> list[Any]:
    return kube_api.list_secrets(field_selector=f"type={MIRROR_SECRET_TYPE}")


def check_remote_cluster(remote_api, remote: RemoteCluster) -> list[str]:
    """Connectivity plus service permissions on a remote cluster; returns problems."""
    try:
        remote_api.get_version_info()
    except Exception as exc:
        return [f"* failed to connect to API for cluster: [{remote.cluster_name}]: {exc}"]
    granted = set()
    for verb in REMOTE_SERVICE_VERBS:
        try:
            remote_api.resource_authz("", verb, "", "v1", "services")
        except Exception as exc:
            logger.debug("Cluster %s denies %s on services: %s", remote.cluster_name, verb, exc)
        else:
            granted.add(verb)
    if granted != set(REMOTE_SERVICE_VERBS):
        return [
            f"* cluster: [{remote.cluster_name}]: Insufficient Service permissions: "
            f"expected {_joined(REMOTE_SERVICE_VERBS)}, got {_joined(granted)}"
        ]
    return []


def anchors_agree(local: list[x509.Certificate], remote: list[x509.Certificate]) -> bool:
    """Anchor sets agree when sizes match and every remote anchor has a signature-equal local one."""
    if len(local) != len(remote):
        return False
    by_signature = {cert.signature: cert for cert in local}
    for cert in remote:
        match = by_signature.get(cert.signature)
        if match is None or not same_certificate(match, cert):
            return False
    return True


def describe_gateway(gateway) -> str:
    """One verbose line per gateway: pairing count plus any reported latency quantiles."""
    line = (
        f"\t* cluster: [{gateway.cluster_name}], gateway: [{gateway.qualified_name}], "
        f"paired services: {gateway.paired_services}"
    )
    if gateway.latency_ms:
        quantiles = " ".join(f"{q}={ms}ms" for q, ms in sorted(gateway.latency_ms.items()))
        line += f", latency: {quantiles}"
    return line


# =====================================================================
# Mirror services
# =====================================================================

def _labels(obj) -> dict[str, str]:
    return obj.metadata.labels or {}


def is_mirrored(service) -> bool:
    return MIRRORED_RESOURCE_LABEL in _labels(service)


def is_exported(service) -> bool:
    annotations = service.metadata.annotations or {}
    return _labels(service).get(EXPORTED_LABEL) == "true" or GATEWAY_NAME_ANNOTATION in annotations


def find_daisy_chains(services: list[Any], traffic_splits: list[dict[str, Any]]) -> list[str]:
    problems = []
    by_key = {(s.metadata.namespace, s.metadata.name): s for s in services}
    for svc in services:
        if is_mirrored(svc) and is_exported(svc):
            problems.append(
                f"* mirror service {svc.metadata.name}.{svc.metadata.namespace} is exported"
            )
    for split in traffic_splits:
        meta = split.get("metadata") or {}
        spec = split.get("spec") or {}
        namespace = meta.get("namespace", "")
        apex = by_key.get((namespace, spec.get("service", "")))
        if apex is None or not is_exported(apex):
            continue
        for backend in spec.get("backends") or []:
            target = by_key.get((namespace, backend.get("service", "")))
            if target is not None and is_mirrored(target):
                problems.append(
                    f"* exported service {apex.metadata.name}.{namespace} has mirror service "
                    f"{target.metadata.name}.{namespace} as a backend in traffic split {meta.get('name', '')}"
                )
    return problems


# =====================================================================
# Category
# =====================================================================

def categories(hc) -> list[Category]:
    opts = hc.options
    mc = hc.context.multicluster

    def requires_source_cluster(body):
        def wrapped():
            if not mc.source_cluster:
                return Outcome.skip(NOT_SOURCE_CLUSTER_SKIP_REASON)
            return body()
        return wrapped

    def service_mirror_deployments() -> list[Any]:
        return hc.kube_api.list_deployments(label_selector=service_mirror_selector())

    def service_mirror_present():
        deployments = service_mirror_deployments()
        if not deployments:
            if opts.multicluster:
                raise MeshHealthError("service mirror controller is not present")
            return Outcome.skip(NOT_SOURCE_CLUSTER_SKIP_REASON)
        mc.source_cluster = True
        mc.service_mirror_namespace = deployments[0].metadata.namespace
        return None

    def service_mirror_running():
        check_service_mirror_controllers(service_mirror_deployments())

    def service_mirror_rbac():
        check_service_mirror_rbac(hc.kube_api, mc.service_mirror_namespace)

    def remote_credentials():
        secrets = list_remote_cluster_secrets(hc.kube_api)
        if not secrets:
            return Outcome.skip("no remote cluster credentials found")
        problems = []
        validated = []
        for secret in secrets:
            where = f"{secret.metadata.namespace}/{secret.metadata.name}"
            try:
                remote = parse_remote_cluster_secret(secret)
            except Exception as exc:
                problems.append(f"* secret: [{where}]: could not parse config secret: {exc}")
                continue
            try:
                remote_api = hc.remote_api(remote.kubeconfig)
            except Exception as exc:
                problems.append(
                    f"* secret: [{where}] cluster: [{remote.cluster_name}]: "
                    f"could not instantiate api for remote cluster: {exc}"
                )
                continue
            cluster_problems = check_remote_cluster(remote_api, remote)
            problems.extend(cluster_problems)
            if not cluster_problems:
                validated.append(remote)
        mc.remote_clusters = validated
        if problems:
            raise join_errors(problems, 1)
        return Outcome.verbose("\n".join(f"\t* {r.cluster_name}" for r in validated))

    def local_anchors() -> list[x509.Certificate]:
        if hc.context.identity.trust_anchors:
            return hc.context.identity.trust_anchors
        values = hc.context.cluster.values
        if values is None:
            _, values = fetch_current_configuration(hc.kube_api, opts.control_plane_namespace)
        if values is None or not values.identity_trust_anchors_pem:
            raise MeshHealthError("local trust anchors are not configured")
        return decode_pem_certificates(values.identity_trust_anchors_pem)

    def shared_trust_anchors():
        if not mc.remote_clusters:
            return Outcome.skip("no remote clusters")
        try:
            local = local_anchors()
        except MeshHealthError as exc:
            raise MeshHealthError(f"Cannot parse source trust anchors: {exc}") from exc
        problems = []
        for remote in mc.remote_clusters:
            try:
                _, values = fetch_current_configuration(hc.remote_api(remote.kubeconfig), remote.namespace)
            except Exception as exc:
                problems.append(f"* {remote.cluster_name}: unable to fetch anchors: {exc}")
                continue
            try:
                remote_anchors = decode_pem_certificates(values.identity_trust_anchors_pem if values else "")
            except MeshHealthError:
                problems.append(f"* {remote.cluster_name}: cannot parse trust anchors")
                continue
            if not anchors_agree(local, remote_anchors):
                problems.append(f"* {remote.cluster_name}")
        if problems:
            raise MeshHealthError("Problematic clusters:\n    " + "\n    ".join(problems))
        return Outcome.verbose("\n".join(f"\t* {r.cluster_name}" for r in mc.remote_clusters))

    def gateways_alive():
        gateways = hc.public_api().gateways(time_window="1m")
        if not gateways:
            return Outcome.skip("no gateways")
        dead = [g for g in gateways if not g.alive]
        if dead:
            raise MeshHealthError("Some gateways are not alive:\n    " + "\n    ".join(
                f"* cluster: [{g.cluster_name}], gateway: [{g.qualified_name}]" for g in dead
            ))
        return Outcome.verbose("\n".join(describe_gateway(g) for g in gateways))

    def mirror_services_have_endpoints():
        services = hc.kube_api.list_services(
            label_selector=f"{MIRRORED_RESOURCE_LABEL},!{MIRRORED_GATEWAY_LABEL}",
        )
        if not services:
            return Outcome.skip("no mirror services")
        missing = []
        for svc in services:
            try:
                endpoints = hc.kube_api.get_endpoints(svc.metadata.namespace, svc.metadata.name)
                empty = not endpoints.subsets
            except Exception as exc:
                logger.debug("error retrieving Endpoints: %s", exc)
                empty = True
            if empty:
                missing.append(
                    f"{svc.metadata.name}.{svc.metadata.namespace} mirrored from cluster "
                    f"[{_labels(svc).get(REMOTE_CLUSTER_NAME_LABEL, '')}]"
                )
        if missing:
            raise MeshHealthError("Some mirror services do not have endpoints:\n    " + "\n    ".join(missing))
        return None

    def orphaned_services():
        services = hc.kube_api.list_services(
            label_selector=f"{MIRRORED_RESOURCE_LABEL},!{MIRRORED_GATEWAY_LABEL},{REMOTE_CLUSTER_NAME_LABEL}",
        )
        if not services:
            return Outcome.skip("no mirror services")
        known = set()
        for secret in list_remote_cluster_secrets(hc.kube_api):
            name = (secret.metadata.annotations or {}).get(REMOTE_CLUSTER_NAME_LABEL)
            if name:
                known.add(name)
        orphans = [
            f"mirror service {s.metadata.name}.{s.metadata.namespace} is not part of any linked cluster"
            for s in services if _labels(s).get(REMOTE_CLUSTER_NAME_LABEL) not in known
        ]
        if orphans:
            raise join_errors(orphans, 1)
        return None

    def traffic_splits() -> list[dict[str, Any]]:
        try:
            return hc.kube_api.list_custom_objects(TRAFFIC_SPLIT_GROUP, TRAFFIC_SPLIT_VERSION, TRAFFIC_SPLIT_PLURAL)
        except Exception as exc:
            if is_not_found(exc):
                return []
            raise

    def daisy_chains():
        problems = find_daisy_chains(hc.kube_api.list_services(), traffic_splits())
        if problems:
            raise MeshHealthError(
                "Daisy-chained mirror services are not supported:\n    " + "\n    ".join(problems)
            )

    deadline = opts.retry_deadline
    return [
        Category(MULTICLUSTER_CHECKS).with_checks(
            new_checker("service mirror controller is present")
            .with_hint_anchor("l5d-multicluster-service-mirror-present")
            .with_check(service_mirror_present),
            new_checker("service mirror controller is running")
            .with_hint_anchor("l5d-multicluster-service-mirror-running")
            .with_retry_deadline(deadline).surface_errors_on_retry()
            .with_check(requires_source_cluster(service_mirror_running)),
            new_checker("service mirror controller has required permissions")
            .with_hint_anchor("l5d-multicluster-local-rbac-correct")
            .with_check(requires_source_cluster(service_mirror_rbac)),
            new_checker("remote cluster access credentials are valid")
            .with_hint_anchor("l5d-smc-target-clusters-access")
            .with_check(requires_source_cluster(remote_credentials)),
            new_checker("clusters share trust anchors")
            .with_hint_anchor("l5d-multicluster-clusters-share-anchors")
            .with_check(requires_source_cluster(shared_trust_anchors)),
            new_checker("all gateways are alive")
            .with_hint_anchor("l5d-multicluster-gateways-alive")
            .with_retry_deadline(deadline)
            .with_check(requires_source_cluster(gateways_alive)),
            new_checker("all mirror services have endpoints")
            .with_hint_anchor("l5d-multicluster-services-endpoints")
            .with_check(requires_source_cluster(mirror_services_have_endpoints)),
            new_checker("all mirror services belong to a linked cluster")
            .with_hint_anchor("l5d-multicluster-orphaned-services").as_warning()
            .with_check(requires_source_cluster(orphaned_services)),
            new_checker("no daisy-chained mirror services")
            .with_hint_anchor("l5d-multicluster-daisy-chaining").as_warning()
            .with_check(requires_source_cluster(daisy_chains)),
        ),
    ]
