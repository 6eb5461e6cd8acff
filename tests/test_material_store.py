"""
Tests for the file-system material store.
"""
import os
import stat
import tempfile
import threading
import time
import unittest
from datetime import timedelta
from unittest.mock import patch

from cryptography.hazmat.primitives import serialization

from clusterpki.models.errors import MaterialIOError
from clusterpki.services.material_store import MaterialStore, KEY, CERT, CHAIN, CSR

from pki_testing import FIXED_NOW, FixedClock, self_signed


def _pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


class TestMaterialStore(unittest.TestCase):
    """Test cases for MaterialStore."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.clock = FixedClock()
        self.store = MaterialStore(self.temp_dir.name, clock=self.clock)

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_layout(self):
        root = self.temp_dir.name
        self.assertEqual(str(self.store.path_for(KEY, "root-ca")), os.path.join(root, "root-ca-key.pem"))
        self.assertEqual(str(self.store.path_for(CERT, "certs/node-a/server")),
                         os.path.join(root, "certs", "node-a", "server.pem"))
        self.assertEqual(str(self.store.path_for(CHAIN, "ca-chain")), os.path.join(root, "ca-chain.pem"))
        self.assertEqual(str(self.store.path_for(CSR, "intermediate-ca")), os.path.join(root, "intermediate-ca.csr"))

    def test_invalid_names(self):
        for name in ("", "/etc/passwd", "../escape", "a//b", "a\\b"):
            with self.subTest(name=name):
                with self.assertRaises(MaterialIOError):
                    self.store.path_for(CERT, name)
        with self.assertRaises(MaterialIOError):
            self.store.path_for("secret", "x")

    def test_permissions(self):
        self.store.put(KEY, "certs/node-a/server", b"key material")
        self.store.put(CERT, "certs/node-a/server", _pem(self_signed(FIXED_NOW + timedelta(days=10))))

        key_mode = stat.S_IMODE(os.stat(self.store.path_for(KEY, "certs/node-a/server")).st_mode)
        cert_mode = stat.S_IMODE(os.stat(self.store.path_for(CERT, "certs/node-a/server")).st_mode)
        self.assertEqual(key_mode, 0o600)
        self.assertEqual(cert_mode, 0o644)

    def test_put_keeps_current_certificate(self):
        first = _pem(self_signed(FIXED_NOW + timedelta(days=10)))
        second = _pem(self_signed(FIXED_NOW + timedelta(days=20)))

        self.assertTrue(self.store.put(CERT, "leaf", first))
        self.assertFalse(self.store.put(CERT, "leaf", second))
        self.assertEqual(self.store.get(CERT, "leaf"), first)

        self.assertTrue(self.store.put(CERT, "leaf", second, overwrite=True))
        self.assertEqual(self.store.get(CERT, "leaf"), second)

    def test_put_replaces_expired_certificate(self):
        expired = _pem(self_signed(FIXED_NOW - timedelta(days=1)))
        fresh = _pem(self_signed(FIXED_NOW + timedelta(days=10)))

        self.store.put(CERT, "leaf", expired)
        self.assertFalse(self.store.is_current(CERT, "leaf"))
        self.assertTrue(self.store.put(CERT, "leaf", fresh))
        self.assertEqual(self.store.get(CERT, "leaf"), fresh)

    def test_unreadable_certificate_is_not_current(self):
        self.store.put(CERT, "leaf", b"garbage")
        self.assertFalse(self.store.is_current(CERT, "leaf"))

    def test_get_missing(self):
        with self.assertRaises(MaterialIOError) as cm:
            self.store.get(CERT, "nothing")
        self.assertEqual(cm.exception.operation, "get")

    def test_put_all_leaves_no_temp_files(self):
        written = self.store.put_all([
            (KEY, "certs/clients/admin", b"k"),
            (CSR, "certs/clients/admin", b"c"),
        ])
        self.assertEqual(written, [(KEY, "certs/clients/admin"), (CSR, "certs/clients/admin")])
        leftovers = [n for n in os.listdir(os.path.join(self.temp_dir.name, "certs", "clients"))
                     if n.endswith(".tmp")]
        self.assertEqual(leftovers, [])

    def test_put_all_failure_keeps_previous_material(self):
        self.store.put(KEY, "node", b"old key")

        with patch("clusterpki.services.material_store.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(MaterialIOError):
                self.store.put_all([(KEY, "node", b"new key"), (CSR, "node", b"csr")], overwrite=True)

        self.assertEqual(self.store.get(KEY, "node"), b"old key")
        self.assertFalse(self.store.exists(CSR, "node"))
        self.assertEqual([n for n in os.listdir(self.temp_dir.name) if n.endswith(".tmp")], [])

    def test_put_all_rolls_back_partial_batch(self):
        self.store.put(KEY, "node", b"old key")
        real_replace = os.replace
        renamed = []

        def replace_then_fail(src, dst):
            if len(renamed) == 2:
                raise OSError("disk full")
            real_replace(src, dst)
            renamed.append(dst)

        with patch("clusterpki.services.material_store.os.replace", side_effect=replace_then_fail):
            with self.assertRaises(MaterialIOError):
                self.store.put_all([(KEY, "node", b"new key"), (CSR, "node", b"new csr"),
                                    (CERT, "node", b"new cert")], overwrite=True)

        self.assertEqual(len(renamed), 2)
        self.assertEqual(self.store.get(KEY, "node"), b"old key")
        self.assertFalse(self.store.exists(CSR, "node"))
        self.assertFalse(self.store.exists(CERT, "node"))
        key_mode = stat.S_IMODE(os.stat(self.store.path_for(KEY, "node")).st_mode)
        self.assertEqual(key_mode, 0o600)
        self.assertEqual([n for n in os.listdir(self.temp_dir.name) if n.endswith((".tmp", ".bak"))], [])

    def test_put_all_replaces_key_with_expired_certificate(self):
        location = "certs/node-a/peer"
        self.store.put(KEY, location, b"old key")
        self.store.put(CERT, location, _pem(self_signed(FIXED_NOW - timedelta(days=1))))
        fresh = _pem(self_signed(FIXED_NOW + timedelta(days=10)))

        written = self.store.put_all([(KEY, location, b"new key"), (CERT, location, fresh)])

        self.assertEqual(written, [(KEY, location), (CERT, location)])
        self.assertEqual(self.store.get(KEY, location), b"new key")
        self.assertEqual(self.store.get(CERT, location), fresh)

    def test_put_all_keeps_current_pair(self):
        location = "certs/node-a/peer"
        current = _pem(self_signed(FIXED_NOW + timedelta(days=10)))
        self.store.put_all([(KEY, location, b"key"), (CERT, location, current)])

        written = self.store.put_all([(KEY, location, b"other key"),
                                      (CERT, location, _pem(self_signed(FIXED_NOW + timedelta(days=20))))])

        self.assertEqual(written, [])
        self.assertEqual(self.store.get(KEY, location), b"key")

    def test_listing(self):
        cert = _pem(self_signed(FIXED_NOW + timedelta(days=10)))
        self.store.put(CERT, "certs/clients/admin", cert)
        self.store.put(KEY, "certs/clients/admin", b"k")
        self.store.put(CERT, "certs/node-a/server", cert)

        self.assertEqual(self.store.list_names(CERT, "certs/clients"), ["certs/clients/admin"])
        self.assertEqual(self.store.list_names(KEY, "certs/clients"), ["certs/clients/admin"])
        self.assertEqual(self.store.list_dirs("certs"), ["clients", "node-a"])
        self.assertEqual(self.store.list_dirs("missing"), [])

    def test_lock_serializes_threads(self):
        active = []
        overlaps = []

        def worker():
            with self.store.lock("ca"):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.01)
                active.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(overlaps, [])
        self.assertTrue(os.path.exists(os.path.join(self.temp_dir.name, ".locks", "ca.lock")))


if __name__ == '__main__':
    unittest.main()
