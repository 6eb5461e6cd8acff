"""
Unit tests for ConfigService and Config models.
"""
import unittest
import tempfile
import os

from clusterpki.models.config import Config, ConfigValidationError, ConfigValidationResult
from clusterpki.services.config_service import ConfigService


class TestConfig(unittest.TestCase):
    """Test cases for Config data model."""

    def test_config_default_values(self):
        """Test that Config has appropriate default values."""
        config = Config()

        self.assertEqual(config.pki_dir, "pki")
        self.assertEqual(config.organization, "etcd")
        self.assertEqual(config.key_algorithm, "rsa")
        self.assertEqual(config.key_size, 2048)

        self.assertEqual(config.cluster_members, "")
        self.assertIsNone(config.ca_host)

        self.assertEqual(config.signing_mode, "auto")
        self.assertIsNone(config.remote_endpoint)
        self.assertEqual(config.signing_label, "etcd-intermediate-ca")
        self.assertEqual(config.max_retry_attempts, 0)

        self.assertEqual(config.renew_threshold_days, 30)
        self.assertEqual(config.renewal_check_time, "03:00")

        self.assertFalse(config.enable_mtls)
        self.assertEqual(config.server_port, 8888)
        self.assertEqual(config.log_level, "INFO")

    def test_config_type_validation(self):
        """Test that Config validates types correctly."""
        with self.assertRaises(ValueError) as cm:
            Config(key_algorithm="dsa")
        self.assertIn("key_algorithm must be one of", str(cm.exception))

        with self.assertRaises(ValueError) as cm:
            Config(key_size=1024)
        self.assertIn("key_size must be an integer of at least 2048", str(cm.exception))

        with self.assertRaises(ValueError) as cm:
            Config(signing_mode="sometimes")
        self.assertIn("signing_mode must be one of", str(cm.exception))

        with self.assertRaises(ValueError) as cm:
            Config(renew_threshold_days=0)
        self.assertIn("renew_threshold_days must be a positive integer", str(cm.exception))

        with self.assertRaises(ValueError) as cm:
            Config(server_port=70000)
        self.assertIn("server_port must be an integer between 1 and 65535", str(cm.exception))

        with self.assertRaises(ValueError) as cm:
            Config(log_level="LOUD")
        self.assertIn("log_level must be one of", str(cm.exception))


class TestConfigValidationResult(unittest.TestCase):
    """Test cases for ConfigValidationResult."""

    def test_separates_errors_and_warnings(self):
        result = ConfigValidationResult(
            is_valid=False,
            errors=[
                ConfigValidationError("a", "bad"),
                ConfigValidationError("b", "meh", "warning"),
            ],
            warnings=[]
        )
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(len(result.warnings), 1)
        summary = result.get_error_summary()
        self.assertIn("ERROR: a - bad", summary)
        self.assertIn("WARNING: b - meh", summary)


class TestConfigService(unittest.TestCase):
    """Test cases for ConfigService."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_service = ConfigService()

    def tearDown(self):
        self.temp_dir.cleanup()

    def _write(self, content):
        path = os.path.join(self.temp_dir.name, "cluster-pki.properties")
        with open(path, "w") as f:
            f.write(content)
        return path

    def test_load_config_sections(self):
        path = self._write(f"""
[pki]
dir = {self.temp_dir.name}/pki
organization = acme
key_algorithm = ecdsa
ec_curve = P-384

[cluster]
members = node-a=10.0.0.1, node-b=10.0.0.2
ca_host = 10.0.0.1

[signing]
mode = remote
remote_endpoint = https://ca.internal:8888
label = acme-intermediate
ca_bundle_path =
request_timeout_seconds = 15

[renewal]
threshold_days = 21
check_time = 02:15

[server]
port = 9443
enable_mtls = yes

[app]
log_level = DEBUG
log_file_path = {self.temp_dir.name}/pki.log
""")
        config = self.config_service.load_config(path)

        self.assertEqual(config.organization, "acme")
        self.assertEqual(config.key_algorithm, "ecdsa")
        self.assertEqual(config.ec_curve, "P-384")
        self.assertEqual(config.ca_host, "10.0.0.1")
        self.assertEqual(config.signing_mode, "remote")
        self.assertEqual(config.remote_endpoint, "https://ca.internal:8888")
        self.assertEqual(config.signing_label, "acme-intermediate")
        self.assertIsNone(config.remote_ca_bundle_path)
        self.assertEqual(config.request_timeout_seconds, 15)
        self.assertEqual(config.renew_threshold_days, 21)
        self.assertEqual(config.renewal_check_time, "02:15")
        self.assertEqual(config.server_port, 9443)
        self.assertTrue(config.enable_mtls)
        self.assertEqual(config.log_level, "DEBUG")
        self.assertIs(self.config_service.get_config(), config)

        topology = self.config_service.get_topology()
        self.assertEqual([(m.name, m.host) for m in topology], [("node-a", "10.0.0.1"), ("node-b", "10.0.0.2")])

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            self.config_service.load_config(os.path.join(self.temp_dir.name, "missing.properties"))

    def test_invalid_integer(self):
        path = self._write("[server]\nport = many\n")
        with self.assertRaises(ValueError) as cm:
            self.config_service.load_config(path)
        self.assertIn("server.port", str(cm.exception))

    def test_remote_mode_requires_endpoint(self):
        path = self._write("[signing]\nmode = remote\n")
        with self.assertRaises(ValueError) as cm:
            self.config_service.load_config(path)
        self.assertIn("remote_endpoint", str(cm.exception))

    def test_get_config_before_load(self):
        with self.assertRaises(ValueError):
            self.config_service.get_config()

    def test_validate_config(self):
        config = Config(
            pki_dir=os.path.join(self.temp_dir.name, "pki"),
            cluster_members="node-a",
            remote_endpoint="ftp://ca",
            remote_client_cert_path="client.pem",
            renewal_check_time="noon",
            log_file_path=os.path.join(self.temp_dir.name, "pki.log"),
        )
        result = self.config_service.validate_config(config)

        fields = sorted(e.field for e in result.errors)
        self.assertEqual(fields, ["cluster_members", "remote_client_cert_path",
                                  "remote_endpoint", "renewal_check_time"])

    def test_validate_config_warnings(self):
        config = Config(
            pki_dir=os.path.join(self.temp_dir.name, "pki"),
            remote_endpoint="http://ca:8888",
            renew_threshold_days=200,
            log_file_path=os.path.join(self.temp_dir.name, "missing", "pki.log"),
        )
        result = self.config_service.validate_config(config)

        self.assertFalse(result.has_errors())
        self.assertEqual(sorted(w.field for w in result.warnings),
                         ["log_file_path", "remote_endpoint", "renew_threshold_days"])

    def test_use_config_rejects_invalid(self):
        with self.assertRaises(ValueError):
            self.config_service.use_config(Config(signing_mode="remote"))

    def test_create_default_config_file(self):
        path = os.path.join(self.temp_dir.name, "config", "default.properties")
        self.config_service.create_default_config_file(path)

        config = ConfigService().load_config(path)
        self.assertEqual(config.signing_label, "etcd-intermediate-ca")
        self.assertEqual(len(ConfigService().get_topology(config)), 3)


if __name__ == '__main__':
    unittest.main()
