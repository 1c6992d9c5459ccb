import os
import tempfile
import unittest
from datetime import datetime
from pathlib import Path
from unittest import mock

from pagelite import storage


def _touch(path: Path, content: bytes, mtime: float) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    os.utime(path, (mtime, mtime))


class DirectoryListingTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name).resolve()
        for year in ("2022", "2024", "2023"):
            (self.root / year).mkdir()
        _touch(self.root / "old.txt", b"a" * 10, 1_000_000)
        _touch(self.root / "new.txt", b"b" * 2048, 3_000_000)
        _touch(self.root / "mid.txt", b"c", 2_000_000)

    def tearDown(self):
        self.tmp.cleanup()

    def test_directories_first_newest_year_first(self):
        names = [entry.name for entry in storage.list_directory(self.root)]
        self.assertEqual(names, ["2024", "2023", "2022", "new.txt", "mid.txt", "old.txt"])

    def test_ascending_directory_order(self):
        names = [entry.name for entry in storage.list_directory(self.root, order="asc")]
        self.assertEqual(names, ["2022", "2023", "2024", "new.txt", "mid.txt", "old.txt"])

    def test_entry_annotations(self):
        entries = {entry.name: entry for entry in storage.list_directory(self.root)}
        self.assertTrue(entries["2024"].is_dir)
        self.assertEqual(entries["2024"].size, "-")
        self.assertFalse(entries["new.txt"].is_dir)
        self.assertEqual(entries["new.txt"].size, "2.0 KB")
        self.assertEqual(entries["new.txt"].size_bytes, 2048)
        self.assertEqual(entries["old.txt"].modified, datetime.fromtimestamp(1_000_000))

    def test_listing_is_not_recursive(self):
        _touch(self.root / "2024" / "deep" / "inner.txt", b"x", 4_000_000)
        names = [entry.name for entry in storage.list_directory(self.root)]
        self.assertNotIn("inner.txt", names)
        self.assertNotIn("deep", names)

    def test_empty_directory(self):
        self.assertEqual(storage.list_directory(self.root / "2022"), [])

    def test_unreadable_directory_raises(self):
        with self.assertRaises(OSError):
            storage.list_directory(self.root / "missing")


class AggregateListingTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name).resolve()
        _touch(self.root / "2023" / "a.txt", b"a", 1_600_000_000)
        _touch(self.root / "2023" / "b.txt", b"bb", 1_650_000_000)
        _touch(self.root / "2024" / "c.txt", b"ccc", 1_700_000_000)

    def tearDown(self):
        self.tmp.cleanup()

    def test_global_recency_order_across_buckets(self):
        files = storage.list_all_files(self.root)
        self.assertEqual([entry.name for entry in files], ["c.txt", "b.txt", "a.txt"])
        self.assertEqual([entry.year for entry in files], ["2024", "2023", "2023"])

    def test_nested_directories_and_root_files_are_ignored(self):
        _touch(self.root / "2024" / "nested" / "hidden.txt", b"h", 1_800_000_000)
        _touch(self.root / "stray.txt", b"s", 1_800_000_000)
        names = [entry.name for entry in storage.list_all_files(self.root)]
        self.assertEqual(names, ["c.txt", "b.txt", "a.txt"])

    def test_unreadable_bucket_is_skipped(self):
        real_scandir = os.scandir

        def flaky_scandir(path):
            if Path(path).name == "2023":
                raise PermissionError("denied")
            return real_scandir(path)

        with mock.patch("pagelite.storage.os.scandir", side_effect=flaky_scandir):
            files = storage.list_all_files(self.root)

        self.assertEqual([entry.name for entry in files], ["c.txt"])

    def test_empty_root(self):
        with tempfile.TemporaryDirectory() as empty:
            self.assertEqual(storage.list_all_files(Path(empty)), [])

    def test_download_url_is_quoted(self):
        _touch(self.root / "2024" / "my page#1.html", b"x", 1_750_000_000)
        entry = storage.list_all_files(self.root)[0]
        self.assertEqual(entry.url, "/2024/my%20page%231.html")


@unittest.skipUnless(hasattr(os, "symlink"), "symlinks unavailable")
class SymlinkedEntryListingTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        base = Path(self.tmp.name).resolve()
        self.root = base / "data"
        self.outside = base / "private"
        _touch(self.root / "2024" / "kept.txt", b"k", 1_700_000_000)
        _touch(self.outside / "secret-ledger.txt", b"s" * 10, 1_800_000_000)
        os.symlink(self.outside, self.root / "2099", target_is_directory=True)
        os.symlink(
            self.outside / "secret-ledger.txt", self.root / "2024" / "ledger-link.txt"
        )

    def tearDown(self):
        self.tmp.cleanup()

    def test_aggregate_skips_buckets_and_files_linked_outside_root(self):
        files = storage.list_all_files(self.root)
        self.assertEqual([entry.name for entry in files], ["kept.txt"])

    def test_aggregate_keeps_files_linked_inside_root(self):
        os.symlink(self.root / "2024" / "kept.txt", self.root / "2024" / "alias.txt")
        names = sorted(entry.name for entry in storage.list_all_files(self.root))
        self.assertEqual(names, ["alias.txt", "kept.txt"])

    def test_directory_listing_skips_entries_linked_outside_root(self):
        root_names = [entry.name for entry in storage.list_directory(self.root, root=self.root)]
        self.assertEqual(root_names, ["2024"])
        bucket_names = [
            entry.name
            for entry in storage.list_directory(self.root / "2024", root=self.root)
        ]
        self.assertEqual(bucket_names, ["kept.txt"])


class HumanFilesizeTests(unittest.TestCase):
    def test_binary_units(self):
        cases = {
            0: "0 B",
            1023: "1023 B",
            1024: "1.0 KB",
            1536: "1.5 KB",
            5 * 1024 ** 2: "5.0 MB",
            3 * 1024 ** 3: "3.0 GB",
        }
        for size, expected in cases.items():
            with self.subTest(size=size):
                self.assertEqual(storage.human_filesize(size), expected)


if __name__ == "__main__":
    unittest.main()
