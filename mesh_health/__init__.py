# SPDX-License-Identifier: MIT

"""Service mesh health checks."""

from mesh_health.config import Options
from mesh_health.errors import CategoryError, MeshHealthError
from mesh_health.healthcheck import HealthChecker
from mesh_health.models import Category, CheckResult, Outcome, new_checker

__all__ = [
    "Category",
    "CategoryError",
    "CheckResult",
    "HealthChecker",
    "MeshHealthError",
    "Options",
    "Outcome",
    "new_checker",
]
