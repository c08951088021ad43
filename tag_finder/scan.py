"""Aggregate a result stream into a scan summary."""

from __future__ import annotations

from typing import Any

from tag_finder.checker import TagCheckResult


class ScanSummary:
    """Running tally of a digest scan.

    Args:
        total: Number of tags submitted for checking.
        target_digest: The digest being searched for.
    """

    def __init__(self, total: int, target_digest: str) -> None:
        self.total = total
        self.target_digest = target_digest
        self.processed = 0
        self.matches: list[str] = []
        self.errors: list[TagCheckResult] = []
        self.cancelled = False

    def add(self, result: TagCheckResult) -> bool:
        """Record *result*; return ``True`` if it matched the target digest."""
        self.processed += 1
        if not result.ok:
            self.errors.append(result)
            return False
        if result.matches(self.target_digest):
            self.matches.append(result.tag)
            return True
        return False

    @property
    def complete(self) -> bool:
        return self.processed >= self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": {
                "total": self.total,
                "processed": self.processed,
                "matches": len(self.matches),
                "errors": len(self.errors),
                "cancelled": self.cancelled,
            },
            "matches": sorted(self.matches),
            "errors": [
                {"tag": r.tag, "message": str(r.error)}
                for r in sorted(self.errors, key=lambda r: r.tag)
            ],
        }
