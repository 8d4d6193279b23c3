import tempfile
import threading
import time
import unittest
from pathlib import Path

from mdr_registry.catalog import CURRENT, AsOf, CatalogStore, KeyedLocks, Snapshot, resolve_as_of, resolve_current
from mdr_registry.db import connect
from mdr_registry.errors import ConflictError, NotFoundError, ValidationError
from mdr_registry.models import ItemVariant, RegistrationStatus, Version
from mdr_registry.services import ensure_schema_applied
from mdr_registry.util import utc_now


def _version(n: int, created_at: str) -> Version:
    return Version(
        item_id="dsd-1",
        version=n,
        variant=ItemVariant.DATA_SET_DEFINITION,
        created_at=created_at,
        modified_at=created_at,
        status=RegistrationStatus.CANDIDATE,
        requested_status=None,
        attributes={"name": f"v{n}"},
    )


class TestResolvers(unittest.TestCase):
    def test_current_is_highest_number(self):
        log = [_version(2, "2024-01-02T00:00:00.000000Z"), _version(1, "2024-01-01T00:00:00.000000Z")]
        self.assertEqual(resolve_current(log).version, 2)
        self.assertIsNone(resolve_current([]))

    def test_as_of_picks_latest_visible(self):
        log = [_version(1, "2024-01-01T00:00:00.000000Z"), _version(2, "2024-03-01T00:00:00.000000Z")]
        self.assertEqual(resolve_as_of(log, "2024-02-01T00:00:00.000000Z").version, 1)
        self.assertEqual(resolve_as_of(log, "2024-03-01T00:00:00.000000Z").version, 2)
        self.assertIsNone(resolve_as_of(log, "2023-12-31T00:00:00.000000Z"))

    def test_as_of_normalizes_timestamps(self):
        self.assertEqual(AsOf.at("2024-02-01T10:00:00Z").timestamp, "2024-02-01T10:00:00.000000Z")
        self.assertEqual(AsOf.at("2024-02-01T12:00:00+02:00").timestamp, "2024-02-01T10:00:00.000000Z")

    def test_malformed_as_of_is_a_validation_error(self):
        for bad in ("yesterday", "", None, 42):
            with self.assertRaises(ValidationError) as ctx:
                AsOf.at(bad)
            self.assertEqual(ctx.exception.fields, ["selector"])


class TestCatalogStore(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = str(Path(self.tmp.name) / "mdr.sqlite")
        conn = connect(self.db_path)
        try:
            ensure_schema_applied(conn)
        finally:
            conn.close()
        self.store = CatalogStore(self.db_path)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _create(self, item_id: str = "dsd-1", name: str = "Personnel") -> int:
        with self.store.writing(item_id) as conn:
            return self.store.create(
                item_id,
                ItemVariant.DATA_SET_DEFINITION,
                Snapshot(status=RegistrationStatus.CANDIDATE, attributes={"name": name}),
                conn,
            )

    def _snap(self, name: str) -> Snapshot:
        return Snapshot(status=RegistrationStatus.CANDIDATE, attributes={"name": name})

    def test_create_then_put_numbers_versions(self):
        self.assertEqual(self._create(), 1)
        self.assertEqual(self.store.put("dsd-1", self._snap("B"), expected_base=1), 2)
        self.assertEqual(self.store.put("dsd-1", self._snap("C"), expected_base=2), 3)
        log = self.store.list_versions("dsd-1")
        self.assertEqual([v.version for v in log], [1, 2, 3])
        self.assertEqual([v.name for v in log], ["Personnel", "B", "C"])

    def test_put_with_stale_base_conflicts(self):
        self._create()
        self.store.put("dsd-1", self._snap("B"), expected_base=1)
        with self.assertRaises(ConflictError) as ctx:
            self.store.put("dsd-1", self._snap("C"), expected_base=1)
        self.assertEqual(ctx.exception.expected, 1)
        self.assertEqual(ctx.exception.actual, 2)
        self.assertEqual(len(self.store.list_versions("dsd-1")), 2)

    def test_put_unknown_item(self):
        with self.assertRaises(NotFoundError):
            self.store.put("dsd-nope", self._snap("X"), expected_base=0)

    def test_get_by_selector(self):
        self._create()
        mark = utc_now()
        time.sleep(0.01)
        self.store.put("dsd-1", self._snap("Later"), expected_base=1)

        self.assertEqual(self.store.get("dsd-1").version, 2)
        self.assertEqual(self.store.get("dsd-1", CURRENT).name, "Later")
        self.assertEqual(self.store.get("dsd-1", 1).name, "Personnel")
        self.assertEqual(self.store.get("dsd-1", AsOf(mark)).version, 1)
        with self.assertRaises(NotFoundError):
            self.store.get("dsd-1", AsOf("2000-01-01T00:00:00.000000Z"))
        with self.assertRaises(NotFoundError):
            self.store.get("dsd-1", 9)
        with self.assertRaises(NotFoundError):
            self.store.get("dsd-missing")

    def test_unsupported_selector_is_a_validation_error(self):
        self._create()
        for bad in ("latest", True, 1.5, AsOf("yesterday")):
            with self.assertRaises(ValidationError) as ctx:
                self.store.get("dsd-1", bad)
            self.assertEqual(ctx.exception.fields, ["selector"])

    def test_failed_transaction_leaves_nothing_behind(self):
        self._create()
        with self.assertRaises(RuntimeError):
            with self.store.writing("dsd-1") as conn:
                self.store.put("dsd-1", self._snap("Doomed"), expected_base=1, conn=conn)
                raise RuntimeError("boom")
        self.assertEqual(self.store.get("dsd-1").version, 1)

    def test_references_of_every_version_are_kept(self):
        self._create("vd-1", "Codes")
        self._create("vd-2", "Other codes")
        with self.store.writing("de-1") as conn:
            self.store.create(
                "de-1",
                ItemVariant.DATA_ELEMENT,
                Snapshot(status=RegistrationStatus.CANDIDATE, attributes={"name": "E"},
                         references={"value_domain": "vd-1"}),
                conn,
            )
        self.assertEqual(self.store.referencing_items("vd-1"), ["de-1"])
        self.store.put(
            "de-1",
            Snapshot(status=RegistrationStatus.CANDIDATE, attributes={"name": "E"},
                     references={"value_domain": "vd-2"}),
            expected_base=1,
        )
        self.assertEqual(self.store.referencing_items("vd-1"), ["de-1"])
        self.assertEqual(self.store.referencing_items("vd-2"), ["de-1"])
        with self.store.writing("de-1") as conn:
            self.store.remove("de-1", conn)
        self.assertEqual(self.store.referencing_items("vd-1"), [])
        self.assertEqual(self.store.referencing_items("vd-2"), [])

    def test_concurrent_puts_never_skip_or_duplicate(self):
        self._create()
        ok: list[int] = []
        conflicts: list[int] = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker(i: int) -> None:
            barrier.wait()
            try:
                n = self.store.put("dsd-1", self._snap(f"w{i}"), expected_base=1)
            except ConflictError:
                with lock:
                    conflicts.append(i)
                return
            with lock:
                ok.append(n)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(ok, [2])
        self.assertEqual(len(conflicts), 7)
        self.assertEqual([v.version for v in self.store.list_versions("dsd-1")], [1, 2])


class TestKeyedLocks(unittest.TestCase):
    def test_same_key_is_exclusive_and_entries_are_dropped(self):
        locks = KeyedLocks()
        inside = []
        overlap = []

        def worker() -> None:
            with locks.hold("k"):
                inside.append(1)
                if len(inside) > 1:
                    overlap.append(1)
                time.sleep(0.005)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(overlap, [])
        self.assertEqual(locks._locks, {})


if __name__ == "__main__":
    unittest.main()
