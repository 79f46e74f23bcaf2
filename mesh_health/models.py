# SPDX-License-Identifier: MIT

"""Checks, categories, outcomes and results."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from mesh_health.errors import MeshHealthError


# =====================================================================
# Check body outcomes
# =====================================================================

class OutcomeKind(str, Enum):
    OK = "ok"
    VERBOSE = "verbose"
    SKIP = "skip"
    FAIL = "fail"


@dataclass(frozen=True)
class Outcome:
    """What a check body reports: ok, ok with a message, skip, or failure."""

    kind: OutcomeKind = OutcomeKind.OK
    message: str = ""
    error: BaseException | None = None

    @classmethod
    def ok(cls) -> Outcome:
        return cls()

    @classmethod
    def verbose(cls, message: str) -> Outcome:
        return cls(OutcomeKind.VERBOSE, message=message)

    @classmethod
    def skip(cls, reason: str) -> Outcome:
        return cls(OutcomeKind.SKIP, message=reason)

    @classmethod
    def fail(cls, error: BaseException | str) -> Outcome:
        if isinstance(error, str):
            error = MeshHealthError(error)
        return cls(OutcomeKind.FAIL, error=error)

    @property
    def skipped(self) -> bool:
        return self.kind is OutcomeKind.SKIP

    @property
    def failed(self) -> bool:
        return self.kind is OutcomeKind.FAIL


def as_outcome(value: Outcome | None) -> Outcome:
    if value is None:
        return Outcome.ok()
    if not isinstance(value, Outcome):
        raise TypeError(f"check body returned {type(value).__name__}, expected Outcome or None")
    return value


# =====================================================================
# Results
# =====================================================================

@dataclass(frozen=True)
class CheckResult:
    category: str
    description: str
    hint_url: str = ""
    retry: bool = False
    warning: bool = False
    err: BaseException | None = field(default=None, compare=False)
    subsystem: str = ""

    @property
    def ok(self) -> bool:
        return self.err is None

    @property
    def error_message(self) -> str:
        return str(self.err) if self.err is not None else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "description": self.description,
            "hint_url": self.hint_url,
            "retry": self.retry,
            "warning": self.warning,
            "error": self.error_message or None,
            "subsystem": self.subsystem or None,
        }


Observer = Callable[[CheckResult], None]


# =====================================================================
# Checks and categories
# =====================================================================

@dataclass
class Checker:
    """A single verification unit.

    Exactly one of ``check`` (returns an Outcome or None) or ``check_rpc``
    (returns a list of self-check results or a skip Outcome) is set.
    """

    description: str
    hint_anchor: str = ""
    fatal: bool = False
    warning: bool = False
    retry_deadline: datetime | None = None
    surface_error_on_retry: bool = False
    check: Callable[[], Outcome | None] | None = None
    check_rpc: Callable[[], Any] | None = None

    def with_hint_anchor(self, anchor: str) -> Checker:
        return replace(self, hint_anchor=anchor)

    def as_fatal(self) -> Checker:
        return replace(self, fatal=True)

    def as_warning(self) -> Checker:
        return replace(self, warning=True)

    def with_retry_deadline(self, deadline: datetime | None) -> Checker:
        return replace(self, retry_deadline=deadline)

    def surface_errors_on_retry(self) -> Checker:
        return replace(self, surface_error_on_retry=True)

    def with_check(self, body: Callable[[], Outcome | None]) -> Checker:
        return replace(self, check=body, check_rpc=None)

    def with_check_rpc(self, body: Callable[[], Any]) -> Checker:
        return replace(self, check_rpc=body, check=None)


def new_checker(description: str) -> Checker:
    return Checker(description=description)


@dataclass
class Category:
    id: str
    checkers: list[Checker] = field(default_factory=list)
    enabled: bool = False

    def with_checks(self, *checkers: Checker) -> Category:
        self.checkers.extend(checkers)
        return self
