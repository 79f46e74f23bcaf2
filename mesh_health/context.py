# SPDX-License-Identifier: MIT

"""Discovery context shared by check bodies during a run.

Fields are written by earlier categories and read by later ones:

* ``cluster`` by kubernetes-api, kubernetes-version, linkerd-existence and
  linkerd-cni-plugin, and by the add-on categories
* ``identity`` by linkerd-identity
* ``multicluster`` by linkerd-multicluster

Check attempts run on a worker thread so they can be abandoned on timeout.
Every field assignment goes through the context's ``AttemptGuard``: only the
orchestrator thread and the attempt currently in flight may write, so an
abandoned attempt that wakes up later cannot overwrite newer state.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from mesh_health.config import MeshValues
from mesh_health.errors import MeshHealthError

logger = logging.getLogger(__name__)


class StaleAttemptError(MeshHealthError):
    """An abandoned check attempt tried to write discovery state."""


class AttemptGuard:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._generation = 0
        self._owner: int | None = None
        self._home = threading.get_ident()

    def bind_home(self) -> None:
        """Make the calling thread the orchestrator thread."""
        with self._lock:
            self._home = threading.get_ident()

    def begin(self) -> int:
        with self._lock:
            self._generation += 1
            self._owner = None
            return self._generation

    def enter(self, generation: int) -> None:
        """Called on the worker thread before the body runs."""
        with self._lock:
            if generation == self._generation:
                self._owner = threading.get_ident()

    def end(self) -> None:
        """Close the current attempt, whether it finished or timed out."""
        with self._lock:
            self._generation += 1
            self._owner = None

    def assign(self, obj: Any, name: str, value: Any) -> None:
        with self._lock:
            ident = threading.get_ident()
            if ident != self._home and ident != self._owner:
                logger.debug("Dropping write to %s.%s from an abandoned attempt", type(obj).__name__, name)
                raise StaleAttemptError(f"abandoned check attempt cannot set {name}")
            object.__setattr__(obj, name, value)


class _Guarded:
    _guard: AttemptGuard | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        guard = self._guard
        if guard is None:
            object.__setattr__(self, name, value)
        else:
            guard.assign(self, name, value)


@dataclass
class ClusterContext(_Guarded):
    kube_api: Any = None
    kube_version: tuple[int, int, int] | None = None
    config_map: Any = None
    values: MeshValues | None = None
    control_plane_pods: list[Any] = field(default_factory=list)
    cni_daemon_set: Any = None
    api_client: Any = None
    # Enabled add-on blocks; None until the add-ons config map has been read.
    addons: dict[str, dict[str, Any]] | None = None


@dataclass
class IdentityContext(_Guarded):
    issuer_cred: Any = None
    trust_anchors: list[Any] = field(default_factory=list)


@dataclass(frozen=True)
class RemoteCluster:
    """Connection descriptor for a linked remote cluster."""

    cluster_name: str
    namespace: str
    secret_name: str = ""
    secret_namespace: str = ""
    cluster_domain: str = "cluster.local"
    kubeconfig: bytes = field(default=b"", repr=False)


@dataclass
class MulticlusterContext(_Guarded):
    source_cluster: bool = False
    service_mirror_namespace: str = ""
    remote_clusters: list[RemoteCluster] = field(default_factory=list)


@dataclass
class DiscoveryContext:
    cluster: ClusterContext = field(default_factory=ClusterContext)
    identity: IdentityContext = field(default_factory=IdentityContext)
    multicluster: MulticlusterContext = field(default_factory=MulticlusterContext)
    guard: AttemptGuard = field(default_factory=AttemptGuard, repr=False, compare=False)

    def __post_init__(self) -> None:
        for phase in (self.cluster, self.identity, self.multicluster):
            object.__setattr__(phase, "_guard", self.guard)
