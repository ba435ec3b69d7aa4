"""
Tiered retention policy.

Snapshots are classified by age into tiers (hourly, daily, weekly,
monthly by default). Within a tier, snapshots are grouped by the tier's
period (clock hour, calendar day, ISO week, calendar month) and one
representative per group is kept, the newest by default. Each tier keeps
at most `keep` representatives, newest groups first. Snapshots older than
every bounded tier expire.

Overrides applied on top of the tier selection:
    - never-delete snapshots (marker file or name pattern) are always kept
    - the newest `min_keep` complete snapshots are always kept
    - in-progress snapshots (no manifest) are kept until they are older
      than `abandon_after_hours`
    - with `max_total_bytes`, the oldest unprotected snapshots are removed
      until the retained set fits
"""

from __future__ import annotations

import fnmatch
import logging
import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from checkpoint.config.settings import RetentionConfig, TierConfig
from checkpoint.layout import Snapshot, list_snapshots

logger = logging.getLogger(__name__)


def period_key(moment: datetime, period: str) -> tuple[int, ...]:
    """Bucket key of a moment for a tier period."""
    moment = moment.astimezone(UTC)
    if period == "hour":
        return (moment.year, moment.month, moment.day, moment.hour)
    if period == "day":
        return (moment.year, moment.month, moment.day)
    if period == "week":
        iso = moment.isocalendar()
        return (iso[0], iso[1])
    if period == "month":
        return (moment.year, moment.month)
    raise ValueError(f"Unknown period: {period}")


def classify(
    snapshot: Snapshot,
    now: datetime,
    tiers: Iterable[TierConfig],
) -> TierConfig | None:
    """
    Return the tier a snapshot belongs to, or None if it has expired.

    Snapshots dated in the future (clock skew) belong to the first tier.
    """
    age_hours = (now - snapshot.created_at).total_seconds() / 3600
    for tier in tiers:
        if tier.max_age_hours is None or age_hours < tier.max_age_hours:
            return tier
    return None


def select_representatives(
    tier: TierConfig,
    snapshots: Iterable[Snapshot],
    rule: str = "newest",
) -> list[Snapshot]:
    """
    Pick one snapshot per period bucket, then the newest `tier.keep` buckets.

    Returns representatives newest first.
    """
    if rule not in ("newest", "oldest"):
        raise ValueError(f"Unknown representative rule: {rule}")

    buckets: dict[tuple[int, ...], Snapshot] = {}
    for snapshot in snapshots:
        key = period_key(snapshot.created_at, tier.period)
        current = buckets.get(key)
        if current is None:
            buckets[key] = snapshot
        elif rule == "newest" and snapshot.created_at > current.created_at:
            buckets[key] = snapshot
        elif rule == "oldest" and snapshot.created_at < current.created_at:
            buckets[key] = snapshot

    representatives = sorted(buckets.values(), key=lambda s: s.created_at, reverse=True)
    return representatives[: tier.keep]


@dataclass(frozen=True)
class RetentionDecision:
    """Why a snapshot is kept or deleted."""

    snapshot: Snapshot
    keep: bool
    reason: str
    tier: str | None = None


@dataclass
class RetentionPlan:
    """Keep/delete decisions for a set of snapshots."""

    decisions: list[RetentionDecision] = field(default_factory=list)

    @property
    def keep(self) -> list[Snapshot]:
        return [d.snapshot for d in self.decisions if d.keep]

    @property
    def delete(self) -> list[Snapshot]:
        return [d.snapshot for d in self.decisions if not d.keep]


@dataclass
class PruneResult:
    """Outcome of a prune pass."""

    kept: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    bytes_freed: int = 0
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return not self.errors


class RetentionEngine:
    """
    Plans and applies retention for a backup directory.

    Args:
        config: Retention settings.
        clock: Returns the current aware datetime.
        size_of: Returns a snapshot's size in bytes.
    """

    def __init__(
        self,
        config: RetentionConfig,
        clock: Callable[[], datetime] | None = None,
        size_of: Callable[[Snapshot], int] | None = None,
    ) -> None:
        self.config = config
        self._clock = clock or (lambda: datetime.now(UTC))
        self._size_of = size_of or (lambda s: s.size_bytes())

    def is_pinned(self, snapshot: Snapshot) -> bool:
        if snapshot.pinned:
            return True
        return any(fnmatch.fnmatch(snapshot.name, pattern) for pattern in self.config.never_delete)

    def plan(self, snapshots: list[Snapshot], now: datetime | None = None) -> RetentionPlan:
        """Decide which snapshots to keep."""
        if now is None:
            now = self._clock()

        reasons: dict[str, tuple[bool, str, str | None]] = {}
        abandon_after = timedelta(hours=self.config.abandon_after_hours)

        complete = [s for s in snapshots if s.complete]
        for snapshot in snapshots:
            if self.is_pinned(snapshot):
                reasons[snapshot.name] = (True, "never-delete", None)
            elif not snapshot.complete:
                if now - snapshot.created_at > abandon_after:
                    reasons[snapshot.name] = (False, "abandoned (no manifest)", None)
                else:
                    reasons[snapshot.name] = (True, "in progress", None)

        by_tier: dict[str, list[Snapshot]] = {tier.name: [] for tier in self.config.tiers}
        tier_of: dict[str, str | None] = {}
        for snapshot in complete:
            tier = classify(snapshot, now, self.config.tiers)
            tier_of[snapshot.name] = tier.name if tier else None
            if tier is not None:
                by_tier[tier.name].append(snapshot)

        for tier in self.config.tiers:
            for snapshot in select_representatives(
                tier, by_tier[tier.name], self.config.representative
            ):
                reasons.setdefault(snapshot.name, (True, f"{tier.name} representative", tier.name))

        for snapshot in complete:
            tier_name = tier_of[snapshot.name]
            if tier_name is None:
                reasons.setdefault(snapshot.name, (False, "expired", None))
            else:
                reasons.setdefault(snapshot.name, (False, f"superseded in {tier_name}", tier_name))

        # Minimum number of complete snapshots, newest first
        newest_first = sorted(complete, key=lambda s: s.created_at, reverse=True)
        kept_complete = sum(1 for s in complete if reasons[s.name][0])
        for snapshot in newest_first:
            if kept_complete >= self.config.min_keep:
                break
            keep, _, tier_name = reasons[snapshot.name]
            if not keep:
                reasons[snapshot.name] = (True, "minimum keep", tier_name)
                kept_complete += 1

        if self.config.max_total_bytes is not None:
            self._apply_size_ceiling(
                snapshots, reasons, newest_first[: max(1, self.config.min_keep)]
            )

        plan = RetentionPlan()
        for snapshot in snapshots:
            keep, reason, _ = reasons[snapshot.name]
            plan.decisions.append(
                RetentionDecision(
                    snapshot=snapshot,
                    keep=keep,
                    reason=reason,
                    tier=tier_of.get(snapshot.name),
                )
            )
        return plan

    def prune(
        self,
        backup_dir: Path,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> PruneResult:
        """Delete snapshots the plan does not keep."""
        snapshots = list_snapshots(backup_dir)
        plan = self.plan(snapshots, now)
        result = PruneResult(dry_run=dry_run)

        for decision in plan.decisions:
            snapshot = decision.snapshot
            if decision.keep:
                result.kept.append(snapshot.name)
                continue

            size = self._size_of(snapshot)
            if dry_run:
                logger.info("Would delete snapshot %s (%s)", snapshot.name, decision.reason)
                result.deleted.append(snapshot.name)
                result.bytes_freed += size
                continue

            try:
                shutil.rmtree(snapshot.path)
            except OSError as e:
                logger.warning("Could not delete snapshot %s: %s", snapshot.name, e)
                result.errors.append(f"{snapshot.name}: {e}")
                continue

            logger.info("Deleted snapshot %s (%s)", snapshot.name, decision.reason)
            result.deleted.append(snapshot.name)
            result.bytes_freed += size

        return result

    def _apply_size_ceiling(
        self,
        snapshots: list[Snapshot],
        reasons: dict[str, tuple[bool, str, str | None]],
        protected: list[Snapshot],
    ) -> None:
        limit = self.config.max_total_bytes
        assert limit is not None

        kept = [s for s in snapshots if reasons[s.name][0]]
        sizes = {s.name: self._size_of(s) for s in kept}
        total = sum(sizes.values())
        if total <= limit:
            return

        protected_names = {s.name for s in protected}
        for snapshot in sorted(kept, key=lambda s: s.created_at):
            if total <= limit:
                break
            if snapshot.name in protected_names or self.is_pinned(snapshot):
                continue
            if not snapshot.complete:
                continue
            tier_name = reasons[snapshot.name][2]
            reasons[snapshot.name] = (False, "size limit", tier_name)
            total -= sizes[snapshot.name]

        if total > limit:
            logger.warning(
                "Retained snapshots use %d bytes, above the %d byte limit; "
                "remaining snapshots are protected",
                total,
                limit,
            )
