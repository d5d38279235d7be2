from __future__ import annotations

import json
import os
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from relaybot.credentials import CredentialStore


class TestCredentialStore(unittest.TestCase):
    def test_missing_store_loads_none(self) -> None:
        with TemporaryDirectory() as tmp:
            store = CredentialStore(Path(tmp) / "auth")
            self.assertFalse(store.exists())
            self.assertIsNone(store.load())

    def test_save_then_load_latest(self) -> None:
        with TemporaryDirectory() as tmp:
            store = CredentialStore(Path(tmp) / "auth")
            store.save({"noise_key": "a", "rev": 1})
            store.save({"noise_key": "b", "rev": 2})
            self.assertEqual({"noise_key": "b", "rev": 2}, store.load())
            leftovers = [p.name for p in store.auth_dir.iterdir() if p.name != "credentials.json"]
            self.assertEqual([], leftovers)
            if os.name == "posix":
                self.assertEqual(0o600, store.path.stat().st_mode & 0o777)

    def test_corrupt_or_foreign_file_treated_as_absent(self) -> None:
        with TemporaryDirectory() as tmp:
            store = CredentialStore(Path(tmp) / "auth")
            store.auth_dir.mkdir(parents=True)
            store.path.write_text("{not json", encoding="utf-8")
            self.assertIsNone(store.load())
            store.path.write_text(json.dumps({"version": 99, "credentials": {}}), encoding="utf-8")
            self.assertIsNone(store.load())
            store.path.write_text(json.dumps({"version": 1, "credentials": ["x"]}), encoding="utf-8")
            self.assertIsNone(store.load())

    def test_save_rejects_non_mapping(self) -> None:
        with TemporaryDirectory() as tmp:
            store = CredentialStore(Path(tmp) / "auth")
            with self.assertRaises(TypeError):
                store.save(["not", "a", "dict"])  # type: ignore[arg-type]
            self.assertFalse(store.exists())

    def test_wipe_removes_whole_directory(self) -> None:
        with TemporaryDirectory() as tmp:
            store = CredentialStore(Path(tmp) / "auth")
            store.save({"k": "v"})
            (store.auth_dir / "pre-key-1.json").write_text("{}", encoding="utf-8")
            self.assertTrue(store.wipe())
            self.assertFalse(store.auth_dir.exists())
            self.assertIsNone(store.load())
            self.assertFalse(store.wipe())


if __name__ == "__main__":
    unittest.main()
