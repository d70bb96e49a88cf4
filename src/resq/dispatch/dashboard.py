"""Operational board and resolution history derived from the report list.

Pure read-side grouping with no store access, so the polling clients can
call it on every tick without side effects.
"""

from collections import Counter

from pydantic import BaseModel

from resq.dispatch.models import CATEGORIES, Report


class ResolutionStats(BaseModel):
    """Summary panel counts over resolved reports."""

    total_resolved: int = 0
    by_category: dict[str, int] = {}


class Dashboard(BaseModel):
    """Coordinator board: open reports by category, resolved history, stats."""

    board: dict[str, list[Report]]
    history: list[Report]
    stats: ResolutionStats

    @property
    def open_count(self) -> int:
        return sum(len(reports) for reports in self.board.values())


def derive_dashboard(reports: list[Report]) -> Dashboard:
    """Partition reports into the operational board and the history feed.

    Every category appears on the board and in the per-category counts,
    even when empty. Input order is preserved within each group.

    Args:
        reports: Reports as listed by the repository (most recent first)

    Returns:
        Dashboard with open reports grouped by category and resolved
        reports with their totals
    """
    board: dict[str, list[Report]] = {category: [] for category in CATEGORIES}
    history: list[Report] = []

    for report in reports:
        if report.status == "resolved":
            history.append(report)
        else:
            board.setdefault(report.category, []).append(report)

    counts = Counter(r.category for r in history)
    stats = ResolutionStats(
        total_resolved=len(history),
        by_category={category: counts.get(category, 0) for category in CATEGORIES},
    )
    return Dashboard(board=board, history=history, stats=stats)
