"""Tests for snapshot layout and the tiered retention policy."""

import shutil
import tempfile
import unittest
from datetime import UTC, datetime, timedelta
from pathlib import Path

from checkpoint.config.settings import RetentionConfig, TierConfig
from checkpoint.layout import (
    KEEP_MARKER,
    MANIFEST_NAME,
    Snapshot,
    latest_complete_snapshot,
    list_snapshots,
    new_snapshot_path,
    parse_snapshot_name,
)
from checkpoint.retention.policy import (
    RetentionEngine,
    classify,
    period_key,
    select_representatives,
)

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=UTC)


def snapshot(age: timedelta, complete: bool = True, pinned: bool = False) -> Snapshot:
    created = NOW - age
    name = created.strftime("%Y%m%d_%H%M%S")
    return Snapshot(
        name=name,
        path=Path("/backups/snapshots") / name,
        created_at=created,
        complete=complete,
        pinned=pinned,
    )


def hourly_series(hours: int) -> list[Snapshot]:
    return [snapshot(timedelta(hours=h, minutes=5)) for h in range(hours)]


class TestLayout(unittest.TestCase):
    """Tests for snapshot naming and discovery."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.backup_dir = Path(self.temp_dir)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _make(self, name, complete=True, pinned=False):
        path = self.backup_dir / "snapshots" / name
        path.mkdir(parents=True)
        if complete:
            (path / MANIFEST_NAME).write_text("{}")
        if pinned:
            (path / KEEP_MARKER).write_text("")
        return path

    def test_parse_snapshot_name(self):
        self.assertEqual(
            parse_snapshot_name("20240615_120000"), datetime(2024, 6, 15, 12, 0, tzinfo=UTC)
        )
        self.assertEqual(
            parse_snapshot_name("20240615_120000-2"), datetime(2024, 6, 15, 12, 0, tzinfo=UTC)
        )
        self.assertIsNone(parse_snapshot_name("latest"))
        self.assertIsNone(parse_snapshot_name("20241345_990000"))

    def test_new_snapshot_path_avoids_collisions(self):
        first = new_snapshot_path(self.backup_dir, NOW)
        first.mkdir(parents=True)

        second = new_snapshot_path(self.backup_dir, NOW)

        self.assertEqual(first.name, "20240615_120000")
        self.assertEqual(second.name, "20240615_120000-1")

    def test_list_snapshots(self):
        self._make("20240615_110000", complete=False)
        self._make("20240614_110000", pinned=True)
        self._make("20240615_100000")
        (self.backup_dir / "snapshots" / "notes.txt").write_text("x")

        snapshots = list_snapshots(self.backup_dir)

        self.assertEqual(
            [s.name for s in snapshots], ["20240614_110000", "20240615_100000", "20240615_110000"]
        )
        self.assertTrue(snapshots[0].pinned)
        self.assertFalse(snapshots[2].complete)
        self.assertEqual(latest_complete_snapshot(self.backup_dir).name, "20240615_100000")

    def test_no_snapshots(self):
        self.assertEqual(list_snapshots(self.backup_dir), [])
        self.assertIsNone(latest_complete_snapshot(self.backup_dir))


class TestTierHelpers(unittest.TestCase):
    """Tests for classify, period_key and select_representatives."""

    def test_period_keys(self):
        moment = datetime(2024, 6, 15, 12, 30, tzinfo=UTC)

        self.assertEqual(period_key(moment, "hour"), (2024, 6, 15, 12))
        self.assertEqual(period_key(moment, "day"), (2024, 6, 15))
        self.assertEqual(period_key(moment, "week"), (2024, 24))
        self.assertEqual(period_key(moment, "month"), (2024, 6))

    def test_classify_by_age(self):
        tiers = RetentionConfig().tiers

        self.assertEqual(classify(snapshot(timedelta(hours=2)), NOW, tiers).name, "hourly")
        self.assertEqual(classify(snapshot(timedelta(days=3)), NOW, tiers).name, "daily")
        self.assertEqual(classify(snapshot(timedelta(days=90)), NOW, tiers).name, "weekly")
        self.assertEqual(classify(snapshot(timedelta(days=800)), NOW, tiers).name, "monthly")

    def test_bounded_tiers_expire(self):
        tiers = (TierConfig("recent", "hour", 24, max_age_hours=24),)

        self.assertIsNone(classify(snapshot(timedelta(days=2)), NOW, tiers))

    def test_one_representative_per_bucket(self):
        tier = TierConfig("daily", "day", keep=2)
        series = [
            snapshot(timedelta(days=1, hours=1)),
            snapshot(timedelta(days=1, hours=3)),
            snapshot(timedelta(days=2, hours=1)),
            snapshot(timedelta(days=3, hours=1)),
        ]

        newest = select_representatives(tier, series, "newest")
        oldest = select_representatives(tier, series, "oldest")

        self.assertEqual(newest, [series[0], series[2]])
        self.assertEqual(oldest, [series[1], series[2]])


class TestRetentionEngine(unittest.TestCase):
    """Tests for RetentionEngine planning and pruning."""

    def _engine(self, **config):
        return RetentionEngine(RetentionConfig(**config), clock=lambda: NOW, size_of=lambda s: 100)

    def test_tier_keep_bounds(self):
        """Test each tier keeps at most its configured count."""
        tiers = (
            TierConfig("hourly", "hour", keep=5, max_age_hours=48),
            TierConfig("daily", "day", keep=3),
        )
        snapshots = hourly_series(24 * 7)

        plan = self._engine(tiers=tiers, min_keep=0).plan(snapshots)

        hourly = [d for d in plan.decisions if d.keep and d.tier == "hourly"]
        daily = [d for d in plan.decisions if d.keep and d.tier == "daily"]
        self.assertEqual(len(hourly), 5)
        self.assertEqual(len(daily), 3)
        self.assertEqual(len(plan.keep), 8)

    def test_never_delete_is_kept(self):
        """Test pinned snapshots and name patterns survive expiry."""
        tiers = (TierConfig("recent", "hour", keep=1, max_age_hours=24),)
        pinned = snapshot(timedelta(days=30), pinned=True)
        patterned = snapshot(timedelta(days=40))
        old = snapshot(timedelta(days=50))

        plan = self._engine(
            tiers=tiers, min_keep=0, never_delete=(patterned.name,)
        ).plan([old, patterned, pinned])

        self.assertIn(pinned, plan.keep)
        self.assertIn(patterned, plan.keep)
        self.assertEqual(plan.delete, [old])

    def test_min_keep_overrides_expiry(self):
        """Test the newest complete snapshots are kept even when expired."""
        tiers = (TierConfig("recent", "hour", keep=1, max_age_hours=1),)
        snapshots = [snapshot(timedelta(days=d)) for d in (10, 9, 8, 7)]

        plan = self._engine(tiers=tiers, min_keep=2).plan(snapshots)

        self.assertEqual(plan.keep, snapshots[2:])
        reasons = {d.snapshot.name: d.reason for d in plan.decisions}
        self.assertEqual(reasons[snapshots[3].name], "minimum keep")

    def test_in_progress_and_abandoned(self):
        """Test incomplete snapshots are kept until abandoned."""
        running = snapshot(timedelta(hours=1), complete=False)
        abandoned = snapshot(timedelta(hours=30), complete=False)

        plan = self._engine().plan([abandoned, running])

        self.assertEqual(plan.keep, [running])
        self.assertEqual(plan.delete, [abandoned])

    def test_size_ceiling_removes_oldest_first(self):
        """Test the size limit drops oldest snapshots but not the newest."""
        snapshots = [snapshot(timedelta(days=d)) for d in (4, 3, 2, 1)]

        plan = self._engine(min_keep=0, max_total_bytes=250).plan(snapshots)

        self.assertEqual(plan.keep, snapshots[2:])

    def test_size_ceiling_protects_newest(self):
        snapshots = [snapshot(timedelta(days=1))]

        plan = self._engine(min_keep=0, max_total_bytes=10).plan(snapshots)

        self.assertEqual(plan.keep, snapshots)

    def test_size_ceiling_respects_min_keep(self):
        """Test the size limit never drops below the minimum keep count."""
        snapshots = [snapshot(timedelta(days=d)) for d in (4, 3, 2, 1)]

        plan = self._engine(min_keep=3, max_total_bytes=150).plan(snapshots)

        self.assertEqual(plan.keep, snapshots[1:])
        reasons = {d.snapshot.name: d.reason for d in plan.decisions}
        self.assertEqual(reasons[snapshots[0].name], "size limit")

    def test_prune_deletes_directories(self):
        temp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, temp_dir, True)
        backup_dir = Path(temp_dir)
        tiers = (TierConfig("recent", "hour", keep=1, max_age_hours=24),)
        names = []
        for hours in (50, 3, 1):
            name = (NOW - timedelta(hours=hours)).strftime("%Y%m%d_%H%M%S")
            path = backup_dir / "snapshots" / name
            path.mkdir(parents=True)
            (path / MANIFEST_NAME).write_text("{}")
            names.append(name)
        engine = RetentionEngine(RetentionConfig(tiers=tiers, min_keep=1), clock=lambda: NOW)

        dry = engine.prune(backup_dir, dry_run=True)
        self.assertEqual(sorted(dry.deleted), sorted(names[:2]))
        self.assertTrue((backup_dir / "snapshots" / names[0]).exists())

        result = engine.prune(backup_dir)

        self.assertTrue(result.success)
        self.assertEqual(sorted(result.deleted), sorted(names[:2]))
        self.assertEqual([s.name for s in list_snapshots(backup_dir)], [names[2]])


if __name__ == "__main__":
    unittest.main()
