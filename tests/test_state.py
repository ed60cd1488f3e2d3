import re
import stat
import tempfile
import unittest
from pathlib import Path

from webhost_provision.state import StateStore


class TestStateStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "state"
        self.store = StateStore(self.path)

    def tearDown(self):
        self._tmp.cleanup()

    def test_get_missing_key_returns_none(self):
        self.assertIsNone(self.store.get("HARDENING_COMPLETE"))
        self.assertFalse(self.store.exists("HARDENING_COMPLETE"))
        self.assertFalse(self.path.exists())

    def test_put_creates_owner_only_file(self):
        self.store.put("SSH_PORT", "2222")
        self.assertEqual(stat.S_IMODE(self.path.stat().st_mode), 0o600)
        self.assertEqual(self.path.read_text(), "SSH_PORT=2222\n")

    def test_repeated_put_keeps_one_line_per_key(self):
        for value in ("22", "2222", "2200", "2022"):
            self.store.put("SSH_PORT", value)
        self.store.put("DEPLOY_USER", "deploy")

        lines = self.path.read_text().splitlines()
        self.assertEqual([line for line in lines if line.startswith("SSH_PORT=")], ["SSH_PORT=2022"])
        self.assertEqual(self.store.get("SSH_PORT"), "2022")
        self.assertEqual(self.store.get("DEPLOY_USER"), "deploy")

    def test_replaced_key_moves_to_end(self):
        self.store.put("A", "1")
        self.store.put("B", "2")
        self.store.put("A", "3")
        self.assertEqual(self.path.read_text(), "B=2\nA=3\n")

    def test_put_same_value_does_not_rewrite(self):
        self.store.put("SSL_CERTIFICATE", "example.com")
        inode = self.path.stat().st_ino
        self.store.put("SSL_CERTIFICATE", "example.com")
        self.assertEqual(self.path.stat().st_ino, inode)

    def test_key_prefix_does_not_collide(self):
        self.store.put("SSL", "a")
        self.store.put("SSL_CONFIGURED", "b")
        self.store.put("SSL", "c")
        self.assertEqual(self.store.get("SSL_CONFIGURED"), "b")
        self.assertEqual(self.store.get("SSL"), "c")

    def test_value_may_contain_equals_sign(self):
        self.store.put("UFW_CONFIGURED", "ssh=22/tcp;custom=none")
        self.assertEqual(self.store.get("UFW_CONFIGURED"), "ssh=22/tcp;custom=none")
        self.assertEqual(self.store.items(), {"UFW_CONFIGURED": "ssh=22/tcp;custom=none"})

    def test_invalid_keys_rejected(self):
        for key in ("", "A=B", "A\nB"):
            with self.assertRaises(ValueError):
                self.store.put(key, "x")

    def test_mark_complete_records_timestamp(self):
        ts = self.store.mark_complete("FIREWALL_COMPLETE")
        self.assertRegex(ts, re.compile(r"^\d{8}_\d{6}$"))
        self.assertEqual(self.store.get("FIREWALL_COMPLETE"), ts)

    def test_get_returns_last_written_value_from_hand_edited_file(self):
        self.path.write_text("SSH_PORT=22\nSSH_PORT=2222\n")
        self.assertEqual(self.store.get("SSH_PORT"), "2222")
        self.store.put("SSH_PORT", "2200")
        self.assertEqual(self.path.read_text(), "SSH_PORT=2200\n")


if __name__ == "__main__":
    unittest.main()
