# SPDX-License-Identifier: MIT

"""Add-on checks.

Add-ons are optional, so every check here is a warning. The enabled set is
read from the ``linkerd-config-addons`` ConfigMap; without it, the add-on
blocks of ``linkerd-config`` are used instead. Checks for an add-on that is
not enabled are skipped.
"""

from __future__ import annotations

import logging
from typing import Any

import yaml

from mesh_health.config import (
    ADDONS_CONFIG_MAP_NAME,
    CONFIG_MAP_VALUES_KEY,
    GRAFANA_ADDON,
    PROMETHEUS_ADDON,
    TRACING_ADDON,
    parse_values,
)
from mesh_health.control_plane import check_resources
from mesh_health.errors import MeshHealthError, is_not_found
from mesh_health.healthcheck import (
    ADDONS_CHECKS,
    GRAFANA_ADDON_CHECKS,
    PROMETHEUS_ADDON_CHECKS,
    TRACING_ADDON_CHECKS,
)
from mesh_health.models import Category, Outcome, new_checker

logger = logging.getLogger(__name__)

PROMETHEUS_SERVICE_ACCOUNT = "linkerd-prometheus"
PROMETHEUS_CONFIG_MAP = "linkerd-prometheus-config"


def addon_string(block: Any, key: str) -> str:
    if not isinstance(block, dict):
        raise MeshHealthError("config value is not a map")
    if key not in block:
        raise MeshHealthError(f"key '{key}' not found in config value")
    value = block[key]
    if not isinstance(value, str):
        raise MeshHealthError(f"config value '{value}' for key '{key}' is not a string")
    return value


def addon_mapping(block: Any, key: str) -> dict[str, Any]:
    if not isinstance(block, dict):
        raise MeshHealthError("config value is not a map")
    if key not in block:
        raise MeshHealthError(f"key '{key}' not found in config value")
    value = block[key]
    if not isinstance(value, dict):
        raise MeshHealthError(f"config value '{value}' for key '{key}' is not a map")
    return value


def parse_addons_config_map(config_map) -> dict[str, dict[str, Any]]:
    """Enabled add-on blocks from the add-ons ConfigMap."""
    data = config_map.data or {}
    if CONFIG_MAP_VALUES_KEY not in data:
        raise MeshHealthError(f"values subpath not found in {ADDONS_CONFIG_MAP_NAME} configmap")
    try:
        values = parse_values(data[CONFIG_MAP_VALUES_KEY])
    except (yaml.YAMLError, ValueError) as exc:
        raise MeshHealthError(f"could not unmarshal {ADDONS_CONFIG_MAP_NAME} config-map: {exc}") from exc
    return values.enabled_addons() if values is not None else {}


def check_container_running(pods: list[Any], container: str) -> None:
    """At least one running pod must have a ready ``container``."""
    seen = False
    for pod in pods:
        if pod.status is None or pod.status.phase != "Running":
            continue
        for status in pod.status.container_statuses or []:
            if status.name != container:
                continue
            if status.ready:
                return
            seen = True
    if seen:
        raise MeshHealthError(f"{container} container is not ready")
    raise MeshHealthError(f"{container} container is not running")


# =====================================================================
# Categories
# =====================================================================

def categories(hc) -> list[Category]:
    opts = hc.options
    ctx = hc.context.cluster
    ns = opts.control_plane_namespace
    deadline = opts.retry_deadline

    def enabled_addons() -> dict[str, dict[str, Any]]:
        if ctx.addons is not None:
            return ctx.addons
        return ctx.values.enabled_addons() if ctx.values is not None else {}

    def addons_config_map():
        try:
            config_map = hc.kube_api.get_config_map(ns, ADDONS_CONFIG_MAP_NAME)
        except Exception as exc:
            if is_not_found(exc):
                raise MeshHealthError(f"missing ConfigMap: {ADDONS_CONFIG_MAP_NAME}") from exc
            raise
        ctx.addons = parse_addons_config_map(config_map)
        logger.debug("Enabled add-ons: %s", ", ".join(sorted(ctx.addons)) or "none")

    def for_addon(name: str, body):
        """Run ``body(block)`` only when add-on ``name`` is enabled."""
        def wrapped():
            block = enabled_addons().get(name)
            if block is None:
                return Outcome.skip(f"{name} add-on not enabled")
            return body(block)
        return wrapped

    def service_account(name_of):
        def body(block):
            accounts = hc.kube_api.list_service_accounts(ns)
            check_resources("ServiceAccounts", accounts, [name_of(block)], True)
        return body

    def config_map(name_of):
        def body(block):
            name = name_of(block)
            try:
                hc.kube_api.get_config_map(ns, name)
            except Exception as exc:
                if is_not_found(exc):
                    raise MeshHealthError(f"missing ConfigMap: {name}") from exc
                raise
        return body

    def pod_running(container: str):
        def body(_block):
            # refreshed on every attempt so retries see the latest status
            ctx.control_plane_pods = hc.kube_api.list_pods(ns)
            check_container_running(ctx.control_plane_pods, container)
        return body

    def grafana_name(block) -> str:
        return addon_string(block, "name")

    def collector_name(block) -> str:
        return addon_string(addon_mapping(block, "collector"), "name")

    def jaeger_name(block) -> str:
        return addon_string(addon_mapping(block, "jaeger"), "name")

    def running(description: str, name: str, container: str):
        return (
            new_checker(description).with_hint_anchor(f"l5d-{container}-pod-running").as_warning()
            .with_retry_deadline(deadline).surface_errors_on_retry()
            .with_check(for_addon(name, pod_running(container)))
        )

    return [
        Category(ADDONS_CHECKS).with_checks(
            new_checker(f"'{ADDONS_CONFIG_MAP_NAME}' config map exists")
            .with_hint_anchor("l5d-addons-config-map").as_warning()
            .with_check(addons_config_map),
        ),
        Category(PROMETHEUS_ADDON_CHECKS).with_checks(
            new_checker("prometheus add-on service account exists")
            .with_hint_anchor("l5d-prometheus-sa").as_warning()
            .with_check(for_addon(PROMETHEUS_ADDON, service_account(lambda _: PROMETHEUS_SERVICE_ACCOUNT))),
            new_checker("prometheus add-on config map exists")
            .with_hint_anchor("l5d-prometheus-config-map").as_warning()
            .with_check(for_addon(PROMETHEUS_ADDON, config_map(lambda _: PROMETHEUS_CONFIG_MAP))),
            running("prometheus pod is running", PROMETHEUS_ADDON, "prometheus"),
        ),
        Category(GRAFANA_ADDON_CHECKS).with_checks(
            new_checker("grafana add-on service account exists")
            .with_hint_anchor("l5d-grafana-sa").as_warning()
            .with_check(for_addon(GRAFANA_ADDON, service_account(grafana_name))),
            new_checker("grafana add-on config map exists")
            .with_hint_anchor("l5d-grafana-config-map").as_warning()
            .with_check(for_addon(GRAFANA_ADDON, config_map(lambda block: f"{grafana_name(block)}-config"))),
            running("grafana pod is running", GRAFANA_ADDON, "grafana"),
        ),
        Category(TRACING_ADDON_CHECKS).with_checks(
            new_checker("collector service account exists")
            .with_hint_anchor("l5d-tracing-collector-sa").as_warning()
            .with_check(for_addon(TRACING_ADDON, service_account(collector_name))),
            new_checker("jaeger service account exists")
            .with_hint_anchor("l5d-tracing-jaeger-sa").as_warning()
            .with_check(for_addon(TRACING_ADDON, service_account(jaeger_name))),
            new_checker("collector config map exists")
            .with_hint_anchor("l5d-tracing-collector-config-map").as_warning()
            .with_check(for_addon(TRACING_ADDON, config_map(lambda block: f"{collector_name(block)}-config"))),
            running("collector pod is running", TRACING_ADDON, "collector"),
            running("jaeger pod is running", TRACING_ADDON, "jaeger"),
        ),
    ]
