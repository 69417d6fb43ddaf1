"""
Error types raised by the cohort pipeline.

Configuration problems are fatal and raised immediately. Data-quality
anomalies (ambiguous residence codes, subjects with too few rounds,
degenerate metrics) are recovered locally and counted instead.
"""


class PanelCohortError(Exception):
    """Base class for pipeline errors."""


class UnknownItemError(PanelCohortError, KeyError):
    """A composite index references an item with no recoding rule."""

    def __init__(self, item: str, composite: str = None):
        self.item = item
        self.composite = composite
        where = f" (composite '{composite}')" if composite else ""
        super().__init__(f"No recoding rule registered for item '{item}'{where}")

    def __str__(self):
        # KeyError quotes its argument; keep the plain message
        return self.args[0]


class SentinelConfigError(PanelCohortError, ValueError):
    """An item's sentinel set or recoding rule is misconfigured."""

    def __init__(self, item: str, reason: str):
        self.item = item
        self.reason = reason
        super().__init__(f"Invalid recoding rule for item '{item}': {reason}")


class SplitOverlapError(PanelCohortError, ValueError):
    """Train and test partitions share at least one subject."""

    def __init__(self, overlap):
        self.overlap = sorted(overlap, key=str)
        preview = ", ".join(str(s) for s in self.overlap[:10])
        more = "" if len(self.overlap) <= 10 else f" (+{len(self.overlap) - 10} more)"
        super().__init__(
            f"{len(self.overlap)} subject(s) appear in both train and test: {preview}{more}"
        )
