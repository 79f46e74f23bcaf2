# SPDX-License-Identifier: MIT

"""Health check orchestration.

Categories run in a fixed order; within a category checks run in
declaration order. Later categories read discovery state written by earlier
ones, so a fatal failure stops the whole run.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable

from mesh_health.config import Options
from mesh_health.context import DiscoveryContext
from mesh_health.errors import CategoryError, CheckTimeoutError, MeshHealthError
from mesh_health.models import (
    Category,
    Checker,
    CheckResult,
    Observer,
    Outcome,
    OutcomeKind,
    as_outcome,
)

logger = logging.getLogger(__name__)

WAITING_MESSAGE = "waiting for check to complete"

# =====================================================================
# Category ids, in run order
# =====================================================================

KUBERNETES_API_CHECKS = "kubernetes-api"
KUBERNETES_VERSION_CHECKS = "kubernetes-version"
PRE_INSTALL_CHECKS = "pre-kubernetes-setup"
CONFIG_CHECKS = "linkerd-config"
CONTROL_PLANE_EXISTENCE_CHECKS = "linkerd-existence"
API_CHECKS = "linkerd-api"
CNI_PLUGIN_CHECKS = "linkerd-cni-plugin"
IDENTITY_CHECKS = "linkerd-identity"
WEBHOOKS_AND_APISVC_TLS_CHECKS = "linkerd-webhooks-and-apisvc-tls"
HA_CHECKS = "linkerd-ha-checks"
ADDONS_CHECKS = "linkerd-addons"
PROMETHEUS_ADDON_CHECKS = "linkerd-prometheus"
GRAFANA_ADDON_CHECKS = "linkerd-grafana"
TRACING_ADDON_CHECKS = "linkerd-tracing"
DATA_PLANE_CHECKS = "linkerd-data-plane"
MULTICLUSTER_CHECKS = "linkerd-multicluster"

ADDON_CATEGORIES = [ADDONS_CHECKS, PROMETHEUS_ADDON_CHECKS, GRAFANA_ADDON_CHECKS, TRACING_ADDON_CHECKS]

CATEGORY_ORDER = [
    KUBERNETES_API_CHECKS,
    KUBERNETES_VERSION_CHECKS,
    PRE_INSTALL_CHECKS,
    CONFIG_CHECKS,
    CONTROL_PLANE_EXISTENCE_CHECKS,
    API_CHECKS,
    CNI_PLUGIN_CHECKS,
    IDENTITY_CHECKS,
    WEBHOOKS_AND_APISVC_TLS_CHECKS,
    HA_CHECKS,
    *ADDON_CATEGORIES,
    DATA_PLANE_CHECKS,
    MULTICLUSTER_CHECKS,
]

PRE_INSTALL_CATEGORIES = [KUBERNETES_API_CHECKS, KUBERNETES_VERSION_CHECKS, PRE_INSTALL_CHECKS]

# Data plane checks are opt-in; see ``with_data_plane``.
POST_INSTALL_CATEGORIES = [
    KUBERNETES_API_CHECKS,
    KUBERNETES_VERSION_CHECKS,
    CONFIG_CHECKS,
    CONTROL_PLANE_EXISTENCE_CHECKS,
    API_CHECKS,
    CNI_PLUGIN_CHECKS,
    IDENTITY_CHECKS,
    WEBHOOKS_AND_APISVC_TLS_CHECKS,
    HA_CHECKS,
    *ADDON_CATEGORIES,
    MULTICLUSTER_CHECKS,
]


def with_data_plane(category_ids: list[str]) -> list[str]:
    """``category_ids`` plus the data plane category, in run order."""
    wanted = set(category_ids) | {DATA_PLANE_CHECKS}
    return [category_id for category_id in CATEGORY_ORDER if category_id in wanted]


class HealthChecker:
    """Runs the enabled categories and streams results to an observer."""

    def __init__(self, category_ids: list[str], options: Options | None = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.options = options or Options()
        self.context = DiscoveryContext()
        self.sleep = sleep
        self.stopped_on_fatal = False
        self.categories = self._all_categories()
        enabled = set(category_ids)
        unknown = enabled - set(CATEGORY_ORDER)
        if unknown:
            raise MeshHealthError(f"unknown check categories: {', '.join(sorted(unknown))}")
        for category in self.categories:
            category.enabled = category.id in enabled

    def _all_categories(self) -> list[Category]:
        from mesh_health import addons, control_plane, data_plane, identity, multicluster

        built: dict[str, Category] = {}
        for module in (control_plane, identity, addons, data_plane, multicluster):
            for category in module.categories(self):
                built[category.id] = category
        return [built[category_id] for category_id in CATEGORY_ORDER]

    # -- collaborators --------------------------------------------------

    @property
    def kube_api(self):
        return self.context.cluster.kube_api

    def initialize_kube_api(self) -> None:
        if self.context.cluster.kube_api is not None:
            return
        if self.options.kube_api_factory is not None:
            self.context.cluster.kube_api = self.options.kube_api_factory()
            return
        from mesh_health.kube import KubernetesAPI
        self.context.cluster.kube_api = KubernetesAPI.from_kubeconfig(
            self.options.kubeconfig, self.options.kube_context, timeout=self.options.request_timeout,
        )

    def remote_api(self, kubeconfig: bytes):
        if self.options.remote_api_factory is not None:
            return self.options.remote_api_factory(kubeconfig)
        from mesh_health.kube import KubernetesAPI
        return KubernetesAPI.from_kubeconfig_bytes(kubeconfig, timeout=self.options.request_timeout)

    def public_api(self):
        if self.context.cluster.api_client is None:
            if self.options.api_client_factory is not None:
                client = self.options.api_client_factory(self.kube_api, self.options.control_plane_namespace)
            else:
                from mesh_health.publicapi import PublicAPIClient
                client = PublicAPIClient.from_kube_api(self.kube_api, self.options.control_plane_namespace)
            self.context.cluster.api_client = client
        return self.context.cluster.api_client

    # -- registration ---------------------------------------------------

    def append_categories(self, *categories: Category) -> None:
        for category in categories:
            category.enabled = True
            self.categories.append(category)

    def add_check(self, category_id: str, description: str, hint_anchor: str,
                  body: Callable[[], Outcome | None]) -> None:
        """Append an ad-hoc check in an enabled category after the standard ones."""
        checker = Checker(description=description, hint_anchor=hint_anchor, check=body)
        for category in self.categories[len(CATEGORY_ORDER):]:
            if category.id == category_id:
                category.checkers.append(checker)
                return
        self.append_categories(Category(category_id, [checker]))

    # -- execution ------------------------------------------------------

    def run(self, observer: Observer) -> bool:
        success, _ = self.run_checks(observer)
        return success

    def run_checks(self, observer: Observer) -> tuple[bool, bool]:
        """Run every enabled category; return ``(success, warning)``."""
        success = True
        warning = False
        self.stopped_on_fatal = False
        self.context.guard.bind_home()
        for category in self.categories:
            if not category.enabled:
                continue
            for checker in category.checkers:
                if checker.check_rpc is not None:
                    passed = self._run_check_rpc(category.id, checker, observer)
                elif checker.check is not None:
                    passed = self._run_check(category.id, checker, observer)
                else:
                    continue
                if passed:
                    continue
                if checker.warning:
                    warning = True
                else:
                    success = False
                if checker.fatal:
                    self.stopped_on_fatal = True
                    return success, warning
        return success, warning

    def hint_url(self, checker: Checker) -> str:
        return f"{self.options.hint_base_url}{checker.hint_anchor}"

    def _can_retry(self, checker: Checker) -> bool:
        deadline = checker.retry_deadline
        return deadline is not None and datetime.now(timezone.utc) < deadline

    def _call(self, checker: Checker, body: Callable[[], Any]) -> Any:
        """Invoke ``body`` bounded by the per-attempt request timeout.

        A timed-out attempt is abandoned, not cancelled; closing its guard
        generation keeps it from writing to the discovery context afterwards.
        """
        guard = self.context.guard
        generation = guard.begin()

        def attempt():
            guard.enter(generation)
            return body()

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mesh-health-check")
        try:
            future = executor.submit(attempt)
            try:
                return future.result(timeout=self.options.request_timeout)
            except FutureTimeoutError:
                raise CheckTimeoutError(checker.description, self.options.request_timeout) from None
        finally:
            guard.end()
            executor.shutdown(wait=False)

    def _attempt(self, checker: Checker) -> Outcome:
        try:
            return as_outcome(self._call(checker, checker.check))
        except Exception as exc:
            return Outcome.fail(exc)

    def _run_check(self, category_id: str, checker: Checker, observer: Observer) -> bool:
        while True:
            outcome = self._attempt(checker)
            if outcome.skipped:
                logger.debug("Skipping check: %s. Reason: %s", checker.description, outcome.message)
                return True

            description = checker.description
            if outcome.kind is OutcomeKind.VERBOSE:
                description = f"{description}\n{outcome.message}"
            err = CategoryError(category_id, outcome.error) if outcome.failed else None
            result = CheckResult(
                category=category_id,
                description=description,
                hint_url=self.hint_url(checker),
                warning=checker.warning,
                err=err,
            )

            if err is not None and self._can_retry(checker):
                logger.debug("Retrying on error: %s", err)
                if not checker.surface_error_on_retry:
                    err = CategoryError(category_id, MeshHealthError(WAITING_MESSAGE))
                observer(replace(result, retry=True, err=err))
                self.sleep(self.options.retry_window)
                continue

            observer(result)
            return err is None

    def _run_check_rpc(self, category_id: str, checker: Checker, observer: Observer) -> bool:
        parent = CheckResult(
            category=category_id,
            description=checker.description,
            hint_url=self.hint_url(checker),
            warning=checker.warning,
        )
        parent_emitted = False
        # (description, error message) -> whether it was last reported as a retry
        seen: dict[tuple[str, str], bool] = {}

        while True:
            try:
                response = self._call(checker, checker.check_rpc)
            except Exception as exc:
                logger.debug("Self-check call failed: %s", exc)
                if not parent_emitted:
                    observer(parent)
                observer(replace(parent, err=CategoryError(category_id, exc)))
                return False

            if not isinstance(response, (Outcome, list, tuple)):
                response = Outcome.fail(TypeError(
                    f"self-check body returned {type(response).__name__}, expected a list of results or Outcome"
                ))
            if isinstance(response, Outcome):
                if response.skipped:
                    logger.debug("Skipping check: %s. Reason: %s", checker.description, response.message)
                    return True
                if response.failed:
                    if not parent_emitted:
                        observer(parent)
                    observer(replace(parent, err=CategoryError(category_id, response.error)))
                    return False
                response = []

            if not parent_emitted:
                observer(parent)
                parent_emitted = True

            failing = any(not sub.ok for sub in response)
            retrying = failing and self._can_retry(checker)
            for sub in response:
                err = None
                if not sub.ok:
                    message = sub.message
                    if retrying and not checker.surface_error_on_retry:
                        message = WAITING_MESSAGE
                    err = CategoryError(category_id, MeshHealthError(message))
                result = CheckResult(
                    category=category_id,
                    description=f"[{sub.subsystem}] {sub.description}",
                    hint_url=self.hint_url(checker),
                    retry=retrying and err is not None,
                    warning=checker.warning,
                    err=err,
                    subsystem=sub.subsystem,
                )
                key = (result.description, result.error_message)
                if key in seen and not (seen[key] and not result.retry):
                    continue
                seen[key] = result.retry
                observer(result)

            if retrying:
                logger.debug("Retrying self-check: %s", checker.description)
                self.sleep(self.options.retry_window)
                continue
            return not failing
