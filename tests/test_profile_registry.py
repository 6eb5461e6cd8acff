"""
Tests for the fixed signing profiles.
"""
import unittest
from datetime import timedelta

from clusterpki.models.config import Config
from clusterpki.models.errors import UnknownRoleError
from clusterpki.models.pki import KeySpec, SERVER_AUTH, CLIENT_AUTH
from clusterpki.services.profile_registry import ProfileRegistry


class TestProfileRegistry(unittest.TestCase):
    """Test cases for ProfileRegistry."""

    def setUp(self):
        self.registry = ProfileRegistry()

    def test_validity_periods(self):
        self.assertEqual(self.registry.profile_for("root").validity, timedelta(hours=87600))
        self.assertEqual(self.registry.profile_for("intermediate").validity, timedelta(hours=70080))
        for role in ("server", "peer", "client"):
            self.assertEqual(self.registry.profile_for(role).validity, timedelta(hours=8760))

    def test_ca_profiles(self):
        root = self.registry.profile_for("root")
        intermediate = self.registry.profile_for("intermediate")

        self.assertTrue(root.is_ca)
        self.assertIsNone(root.issuer_role)
        self.assertTrue(intermediate.is_ca)
        self.assertEqual(intermediate.path_length, 0)
        self.assertEqual(intermediate.issuer_role, "root")

    def test_leaf_usages(self):
        self.assertEqual(self.registry.profile_for("server").usages, frozenset({SERVER_AUTH}))
        self.assertEqual(self.registry.profile_for("peer").usages, frozenset({SERVER_AUTH, CLIENT_AUTH}))
        self.assertEqual(self.registry.profile_for("client").usages, frozenset({CLIENT_AUTH}))

    def test_san_requirements(self):
        self.assertTrue(self.registry.profile_for("server").requires_san)
        self.assertTrue(self.registry.profile_for("peer").requires_san)
        self.assertFalse(self.registry.profile_for("client").requires_san)

    def test_unknown_role(self):
        with self.assertRaises(UnknownRoleError) as cm:
            self.registry.profile_for("admin")
        self.assertEqual(cm.exception.role, "admin")
        self.assertEqual(cm.exception.kind, "UnknownRoleError")

    def test_role_listing(self):
        self.assertEqual(self.registry.roles(), ["root", "intermediate", "server", "peer", "client"])
        self.assertEqual(self.registry.leaf_roles(), ["server", "peer", "client"])

    def test_default_key_is_rsa_2048(self):
        key = self.registry.profile_for("server").key
        self.assertEqual(key.algorithm, "rsa")
        self.assertEqual(key.size, 2048)

    def test_from_config_selects_ecdsa(self):
        registry = ProfileRegistry.from_config(Config(key_algorithm="ecdsa", ec_curve="P-384"))
        key = registry.profile_for("peer").key
        self.assertEqual(key.describe(), "ecdsa-P-384")

    def test_key_spec_validation(self):
        with self.assertRaises(ValueError):
            KeySpec(algorithm="dsa")
        with self.assertRaises(ValueError):
            KeySpec(algorithm="rsa", size=1024)
        with self.assertRaises(ValueError):
            KeySpec(algorithm="ecdsa", curve="P-521")


if __name__ == '__main__':
    unittest.main()
