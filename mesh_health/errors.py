# SPDX-License-Identifier: MIT

"""Exception types raised and reported by the health checker."""

from __future__ import annotations

from typing import Any


class MeshHealthError(Exception):
    """Base class for errors raised by mesh_health."""


class CategoryError(MeshHealthError):
    """Wraps a failing check's error with the category that produced it."""

    def __init__(self, category: str, err: BaseException) -> None:
        super().__init__(str(err))
        self.category = category
        self.err = err
        self.__cause__ = err

    def __str__(self) -> str:
        return str(self.err)


class CheckTimeoutError(MeshHealthError):
    def __init__(self, description: str, timeout: float) -> None:
        super().__init__(f"check '{description}' did not complete within {timeout:g}s")
        self.timeout = timeout


class ResourceError(MeshHealthError):
    """Resources that exist but should not (pre-install checks)."""

    def __init__(self, resource_name: str, names: list[str]) -> None:
        super().__init__(f"{resource_name} found but should not exist: {' '.join(names)}")
        self.resource_name = resource_name
        self.names = names


def is_category_error(err: BaseException | None, category: str) -> bool:
    return isinstance(err, CategoryError) and err.category == category


def is_not_found(exc: BaseException | None) -> bool:
    return getattr(exc, "status", None) == 404


def join_errors(errors: list[Any], tab_depth: int) -> MeshHealthError:
    indent = "    " * tab_depth
    return MeshHealthError("\n".join(f"{indent}{e}" for e in errors))
