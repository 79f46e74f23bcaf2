# SPDX-License-Identifier: MIT

"""Result collection, summary and text report."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from mesh_health.models import CheckResult

OK_MARK = "√"
WARN_MARK = "‼"
FAIL_MARK = "×"

FATAL_FOOTER = "Subsequent checks were skipped"


@dataclass
class ResultCollector:
    """Observer that keeps every emitted result in order."""

    results: list[CheckResult] = field(default_factory=list)

    def __call__(self, result: CheckResult) -> None:
        self.results.append(result)

    @property
    def final_results(self) -> list[CheckResult]:
        """Results that are not retry placeholders."""
        return [r for r in self.results if not r.retry]


def _mark(result: CheckResult) -> str:
    if result.ok:
        return OK_MARK
    return WARN_MARK if result.warning else FAIL_MARK


def summarize(results: list[CheckResult], success: bool, warning: bool) -> dict[str, Any]:
    final = [r for r in results if not r.retry]
    failed = sum(1 for r in final if not r.ok and not r.warning)
    warned = sum(1 for r in final if not r.ok and r.warning)
    if not success:
        overall = "failed"
    elif warning:
        overall = "warning"
    else:
        overall = "healthy"
    return {
        "overall_health": overall,
        "total_checks": len(final),
        "passed_count": len(final) - failed - warned,
        "failed_count": failed,
        "warning_count": warned,
        "retry_count": len(results) - len(final),
        "categories": list(dict.fromkeys(r.category for r in final)),
    }


def generate_report_text(
    context_name: str,
    results: list[CheckResult],
    success: bool,
    warning: bool,
    fatal: bool = False,
    timestamp: datetime | None = None,
) -> str:
    timestamp = timestamp or datetime.now(timezone.utc)
    lines = [
        f"# Mesh Health Check: {context_name}",
        f"Timestamp: {timestamp.isoformat()}",
        "",
    ]

    category = None
    for result in results:
        if result.retry:
            continue
        if result.category != category:
            category = result.category
            lines.append(category)
            lines.append("-" * len(category))
        lines.append(f"{_mark(result)} {result.description}")
        if not result.ok:
            for line in result.error_message.splitlines():
                lines.append(f"    {line}")
            if result.hint_url:
                lines.append(f"    see {result.hint_url} for hints")

    lines.append("")
    if fatal:
        lines.append(FATAL_FOOTER)
    if success:
        lines.append(f"Status check results are {OK_MARK}" if not warning
                     else f"Status check results are {WARN_MARK}")
    else:
        lines.append(f"Status check results are {FAIL_MARK}")
    return "\n".join(lines)
