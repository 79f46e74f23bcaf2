# SPDX-License-Identifier: MIT

"""Control-plane public API client (self-check and gateway status).

Requests go through the Kubernetes API server's service proxy, so the only
connection material needed is the cluster's own ``ApiClient``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from mesh_health.config import REQUEST_TIMEOUT
from mesh_health.errors import MeshHealthError

logger = logging.getLogger(__name__)

API_SERVICE_NAME = "linkerd-controller-api"
API_PORT_NAME = "http"
API_PREFIX = "api/v1"


@dataclass(frozen=True)
class SelfCheckResult:
    subsystem: str
    description: str
    ok: bool = True
    message: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SelfCheckResult:
        return cls(
            subsystem=data.get("subsystemName", ""),
            description=data.get("checkDescription", ""),
            ok=data.get("status", "OK") == "OK",
            message=data.get("friendlyMessageToUser", ""),
        )


@dataclass(frozen=True)
class GatewayStatus:
    cluster_name: str
    name: str
    namespace: str
    alive: bool
    paired_services: int = 0
    latency_ms: dict[str, int] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GatewayStatus:
        return cls(
            cluster_name=data.get("clusterName", ""),
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            alive=bool(data.get("alive")),
            paired_services=int(data.get("pairedServices") or 0),
            latency_ms={k: int(v) for k, v in (data.get("latencies") or {}).items()},
        )

    @property
    def qualified_name(self) -> str:
        return f"{self.name}.{self.namespace}"


class PublicAPIClient:
    def __init__(self, api_client, namespace: str, timeout: float = REQUEST_TIMEOUT) -> None:
        self.api_client = api_client
        self.namespace = namespace
        self.timeout = timeout

    @classmethod
    def from_kube_api(cls, kube_api, namespace: str) -> PublicAPIClient:
        return cls(kube_api.api_client, namespace, timeout=kube_api.timeout)

    def _path(self, method: str) -> str:
        return (
            f"/api/v1/namespaces/{self.namespace}/services/"
            f"{API_SERVICE_NAME}:{API_PORT_NAME}/proxy/{API_PREFIX}/{method}"
        )

    def _post(self, method: str, body: dict[str, Any]) -> dict[str, Any]:
        response = self.api_client.call_api(
            self._path(method), "POST",
            header_params={"Accept": "application/json", "Content-Type": "application/json"},
            body=body,
            response_type="object",
            auth_settings=["BearerToken"],
            _return_http_data_only=True,
            _request_timeout=self.timeout,
        )
        if not isinstance(response, dict):
            raise MeshHealthError(f"unexpected response from {method}: {response!r}")
        return response

    def self_check(self) -> list[SelfCheckResult]:
        response = self._post("SelfCheck", {})
        return [SelfCheckResult.from_dict(r) for r in response.get("results") or []]

    def gateways(self, time_window: str = "1m") -> list[GatewayStatus]:
        response = self._post("Gateways", {"timeWindow": time_window})
        error = (response.get("error") or {}).get("error")
        if error:
            raise MeshHealthError(f"failed to fetch gateway metrics: {error}")
        rows = ((response.get("ok") or {}).get("gatewaysTable") or {}).get("rows") or []
        return [GatewayStatus.from_dict(row) for row in rows]
