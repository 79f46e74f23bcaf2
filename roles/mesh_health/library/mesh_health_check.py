#!/usr/bin/python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

"""Service mesh health check module for Ansible.

Runs the mesh_health check categories against a cluster via kubeconfig.
The module talks to the Kubernetes API (and the mesh control plane through
the API server's service proxy) from the Ansible control node.

All checks are read-only. Pre-install checks only use authorization
dry-runs, nothing is ever created.
"""

from __future__ import annotations

DOCUMENTATION = r"""
---
module: mesh_health_check
short_description: Run service mesh health checks against a cluster
version_added: "1.0.0"
description:
  - Connects to a Kubernetes cluster via kubeconfig and verifies the mesh
    control plane, its identity trust chain, webhook certificates, and
    multicluster links.
  - Checks run in a fixed category order. A failing fatal check stops the run.
  - Completely read-only.
options:
  kubeconfig:
    description: Path to the kubeconfig file.
    type: path
    default: ~/.kube/config
  context:
    description: Kubeconfig context to use. Defaults to current context.
    type: str
  control_plane_namespace:
    description: Namespace the control plane is installed in.
    type: str
    default: linkerd
  cni_namespace:
    description: Namespace the CNI plugin is installed in.
    type: str
    default: linkerd-cni
  checks:
    description: Category ids to run. Defaults to all post-install categories.
    type: list
    elements: str
  pre:
    description: Run the pre-install categories instead of the post-install ones.
    type: bool
    default: false
  proxy:
    description: Also run the data plane category against meshed workloads.
    type: bool
    default: false
  namespace:
    description: Namespace whose proxies the data plane category checks. Defaults to all namespaces.
    type: str
  multicluster:
    description: Fail, rather than skip, multicluster checks when no service mirror controller is found.
    type: bool
    default: false
  wait:
    description: Seconds during which retryable checks are retried.
    type: int
    default: 300
  hint_base_url:
    description: Base URL prepended to each check's hint anchor.
    type: str
    default: https://linkerd.io/2/checks/#
requirements:
  - kubernetes
  - cryptography
  - mesh_health
author:
  - mesh-health contributors
"""

EXAMPLES = r"""
- name: Run all post-install checks against current context
  mesh_health_check:
  register: health

- name: Verify a cluster is ready for installation
  mesh_health_check:
    pre: true
  register: health

- name: Check identity only, without waiting on retries
  mesh_health_check:
    context: prod-cluster
    checks:
      - kubernetes-api
      - linkerd-existence
      - linkerd-identity
    wait: 0
  register: health

- name: Check the proxies of one application namespace
  mesh_health_check:
    proxy: true
    namespace: emojivoto
  register: health

- name: Fail playbook if the mesh is unhealthy
  mesh_health_check:
    multicluster: true
  register: health
  failed_when: not health.success
"""

RETURN = r"""
success:
  description: False when any non-warning check failed.
  type: bool
  returned: always
warning:
  description: True when any warning check failed.
  type: bool
  returned: always
check_results:
  description: Every emitted check result, in order, including retry placeholders.
  type: list
  returned: always
  elements: dict
  sample:
    - category: "linkerd-identity"
      description: "issuer cert is within its validity period"
      hint_url: "https://linkerd.io/2/checks/#l5d-identity-issuer-cert-is-time-valid"
      retry: false
      warning: false
      error: "issuer certificate is not valid anymore. Expired on 2026-01-01T00:00:00Z"
      subsystem: null
summary:
  description: Overall health summary.
  type: dict
  returned: always
  sample:
    overall_health: "failed"
    total_checks: 31
    passed_count: 30
    failed_count: 1
    warning_count: 0
    retry_count: 0
report_text:
  description: Human-readable text report.
  type: str
  returned: always
"""

import logging
from datetime import datetime, timedelta, timezone

logger = logging.getLogger("mesh_health_check")


def build_options(params: dict):
    from mesh_health.config import Options

    wait = params.get("wait") or 0
    deadline = datetime.now(timezone.utc) + timedelta(seconds=wait) if wait > 0 else None
    return Options(
        control_plane_namespace=params["control_plane_namespace"],
        cni_namespace=params["cni_namespace"],
        data_plane_namespace=params.get("namespace") or "",
        multicluster=params["multicluster"],
        retry_deadline=deadline,
        hint_base_url=params["hint_base_url"],
        kubeconfig=params["kubeconfig"],
        kube_context=params["context"],
    )


def select_categories(params: dict) -> list[str]:
    from mesh_health.healthcheck import POST_INSTALL_CATEGORIES, PRE_INSTALL_CATEGORIES, with_data_plane

    if params.get("checks"):
        return list(params["checks"])
    if params.get("pre"):
        return list(PRE_INSTALL_CATEGORIES)
    if params.get("proxy"):
        return with_data_plane(POST_INSTALL_CATEGORIES)
    return list(POST_INSTALL_CATEGORIES)


# =====================================================================
# Ansible Module Entry Point
# =====================================================================

def run_module():
    from ansible.module_utils.basic import AnsibleModule

    module = AnsibleModule(
        argument_spec=dict(
            kubeconfig=dict(type="path", default="~/.kube/config"),
            context=dict(type="str", default=None),
            control_plane_namespace=dict(type="str", default="linkerd"),
            cni_namespace=dict(type="str", default="linkerd-cni"),
            checks=dict(type="list", elements="str", default=None),
            pre=dict(type="bool", default=False),
            multicluster=dict(type="bool", default=False),
            proxy=dict(type="bool", default=False),
            namespace=dict(type="str", default=None),
            wait=dict(type="int", default=300),
            hint_base_url=dict(type="str", default="https://linkerd.io/2/checks/#"),
        ),
        supports_check_mode=True,
    )

    # Verify required packages are available
    try:
        from mesh_health.errors import MeshHealthError
        from mesh_health.healthcheck import HealthChecker
        from mesh_health.report import ResultCollector, generate_report_text, summarize
    except ImportError as e:
        module.fail_json(msg=f"The 'mesh_health' Python package and its dependencies are required: {e}")
        return

    params = module.params
    category_ids = select_categories(params)
    logger.debug("Running categories: %s", ", ".join(category_ids))
    try:
        hc = HealthChecker(category_ids, build_options(params))
    except MeshHealthError as e:
        module.fail_json(msg=str(e))
        return

    collector = ResultCollector()
    try:
        success, warning = hc.run_checks(collector)
    except Exception as e:
        module.fail_json(msg=f"Health checks aborted: {e}")
        return

    report_text = generate_report_text(
        params["context"] or "current-context",
        collector.results,
        success,
        warning,
        fatal=hc.stopped_on_fatal,
    )

    module.exit_json(
        changed=False,
        success=success,
        warning=warning,
        check_results=[r.to_dict() for r in collector.results],
        summary=summarize(collector.results, success, warning),
        report_text=report_text,
    )


def main():
    run_module()


if __name__ == "__main__":
    main()
