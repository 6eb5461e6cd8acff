"""
Tests for the command line entry point.
"""

import logging
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from clusterpki.main import ClusterPKIApplication, build_parser, main
from clusterpki.models.config import Config
from clusterpki.models.pki import LocalSigning


CONFIG_TEMPLATE = """
[pki]
dir = {pki_dir}
key_algorithm = ecdsa

[cluster]
members = node-a=10.0.0.1

[signing]
mode = local

[app]
log_level = INFO
log_file_path = {log_path}
"""


def _reset_root_logger():
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


class TestMainCommands:
    """Test cases for the cluster-pki commands."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.pki_dir = os.path.join(self.temp_dir, "pki")
        self.config_path = self._write_config("config.properties", self.pki_dir)

    def teardown_method(self):
        _reset_root_logger()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, name, pki_dir):
        path = os.path.join(self.temp_dir, name)
        with open(path, "w") as f:
            f.write(CONFIG_TEMPLATE.format(pki_dir=pki_dir,
                                           log_path=os.path.join(self.temp_dir, "logs", "pki.log")))
        return path

    def run(self, *argv, config_path=None):
        return main(["--config", config_path or self.config_path, "--quiet", *argv])

    def _create_hierarchy(self):
        assert self.run("create-root") == 0
        assert self.run("create-intermediate") == 0

    def test_create_root(self, capsys):
        assert self.run("create-root") == 0
        assert "created root CA" in capsys.readouterr().out
        assert os.path.exists(os.path.join(self.pki_dir, "root-ca.pem"))
        assert os.path.exists(os.path.join(self.pki_dir, "root-ca-key.pem"))

    def test_create_root_is_idempotent(self, capsys):
        self.run("create-root")
        capsys.readouterr()

        assert self.run("create-root") == 0
        assert "kept root CA" in capsys.readouterr().out

    def test_force_without_override_fails(self, capsys):
        self.run("create-root")
        capsys.readouterr()

        assert self.run("create-root", "--force") == 1
        assert "CAAlreadyExistsError" in capsys.readouterr().err

    def test_create_intermediate_without_root(self, capsys):
        assert self.run("create-intermediate") == 1
        assert "SigningUnavailableError" in capsys.readouterr().err

    def test_issue_cluster(self, capsys):
        self._create_hierarchy()
        capsys.readouterr()

        assert self.run("issue-cluster", "--client", "admin") == 0

        out = capsys.readouterr().out
        assert "issued server certificate for node-a" in out
        assert "issued peer certificate for node-a" in out
        assert "issued client certificate for admin" in out
        for path in ("certs/node-a/server.pem", "certs/node-a/peer-key.pem",
                     "certs/node-a/ca-chain.pem", "certs/clients/admin.pem"):
            assert os.path.exists(os.path.join(self.pki_dir, path))

    def test_issue_unknown_role(self, capsys):
        self._create_hierarchy()
        capsys.readouterr()

        assert self.run("issue", "node-a", "--role", "admin") == 1
        assert "UnknownRoleError" in capsys.readouterr().err

    def test_issue_unknown_role_before_hierarchy(self, capsys):
        assert self.run("issue", "node-a", "--role", "bogus") == 1
        err = capsys.readouterr().err
        assert "UnknownRoleError" in err
        assert "SigningUnavailableError" not in err

    def test_issue_invalid_subject(self, capsys):
        self._create_hierarchy()
        capsys.readouterr()

        assert self.run("issue", "../etc", "--role", "client") == 1
        assert "InvalidSubjectError" in capsys.readouterr().err

    def test_audit(self, capsys):
        self._create_hierarchy()
        self.run("issue-member", "node-a", "10.0.0.1")
        capsys.readouterr()

        assert self.run("audit") == 0
        out = capsys.readouterr().out
        assert "4 ok, 0 warn, 0 must_renew" in out

        later = (datetime.now(timezone.utc) + timedelta(days=340)).isoformat()
        assert self.run("audit", "--now", later) == 0
        out = capsys.readouterr().out
        assert "must_renew node-a server" in out
        assert "2 ok, 0 warn, 2 must_renew" in out

    def test_renew_due(self, capsys):
        self._create_hierarchy()
        self.run("issue-member", "node-a", "10.0.0.1")
        capsys.readouterr()

        later = (datetime.now(timezone.utc) + timedelta(days=340)).isoformat()
        assert self.run("renew-due", "--now", later) == 0

        out = capsys.readouterr().out
        assert "issued server certificate for node-a" in out
        assert "issued peer certificate for node-a" in out

    def test_renew_unknown_subject(self, capsys):
        self._create_hierarchy()
        capsys.readouterr()

        assert self.run("renew", "ghost") == 1
        assert "InvalidSubjectError" in capsys.readouterr().err

    def test_watch_once(self, capsys):
        self._create_hierarchy()
        capsys.readouterr()

        assert self.run("watch", "--once") == 0
        assert "renewed 0 certificates, 0 failures" in capsys.readouterr().out

    def test_bootstrap(self, capsys):
        self._create_hierarchy()
        node_dir = os.path.join(self.temp_dir, "node")
        node_config = self._write_config("node.properties", node_dir)
        capsys.readouterr()

        assert self.run("bootstrap", self.pki_dir, config_path=node_config) == 0
        assert "bootstrapped 4 artifacts" in capsys.readouterr().out
        assert os.path.exists(os.path.join(node_dir, "intermediate-ca-key.pem"))
        assert not os.path.exists(os.path.join(node_dir, "root-ca-key.pem"))

        assert self.run("issue-member", "node-a", "10.0.0.1", config_path=node_config) == 0

    def test_bootstrap_missing_source(self, capsys):
        assert self.run("bootstrap", os.path.join(self.temp_dir, "empty")) == 1
        assert "MaterialIOError" in capsys.readouterr().err

    def test_pki_dir_override(self):
        other_dir = os.path.join(self.temp_dir, "other")

        assert main(["--config", self.config_path, "--pki-dir", other_dir, "--quiet", "create-root"]) == 0
        assert os.path.exists(os.path.join(other_dir, "root-ca.pem"))
        assert not os.path.exists(os.path.join(self.pki_dir, "root-ca.pem"))

    def test_missing_config_file(self, capsys):
        assert main(["--config", os.path.join(self.temp_dir, "missing.properties"), "audit"]) == 1
        assert "Configuration error" in capsys.readouterr().err

    def test_init_config(self):
        path = os.path.join(self.temp_dir, "config", "cluster-pki.properties")

        assert main(["init-config", path]) == 0
        with open(path) as f:
            assert "[signing]" in f.read()


class TestArgumentParsing:
    """Test cases for argument parsing."""

    def test_issue_requires_role(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["issue", "node-a"])

    def test_invalid_now(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["audit", "--now", "yesterday"])

    def test_naive_now_is_utc(self):
        args = build_parser().parse_args(["audit", "--now", "2027-01-01T00:00:00"])

        assert args.now == datetime(2027, 1, 1, tzinfo=timezone.utc)

    def test_repeatable_sans(self):
        args = build_parser().parse_args(["issue", "node-a", "--role", "peer",
                                          "--san", "node-a", "--san", "10.0.0.1"])

        assert args.san == ["node-a", "10.0.0.1"]


class TestClusterPKIApplication:
    """Test cases for ClusterPKIApplication wiring."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config = Config(
            pki_dir=os.path.join(self.temp_dir, "pki"),
            key_algorithm="ecdsa",
            signing_mode="local",
            log_file_path=os.path.join(self.temp_dir, "logs", "pki.log"),
        )

    def teardown_method(self):
        _reset_root_logger()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_signing_availability_without_intermediate(self):
        app = ClusterPKIApplication(config=self.config, console_logging=False)

        availability = app.signing_availability()

        assert not availability.local_available
        assert not availability.remote_available
        assert "no remote signing endpoint configured" in availability.reasons

    def test_signing_mode_after_intermediate(self):
        app = ClusterPKIApplication(config=self.config, console_logging=False)
        app.signing_availability()
        app.create_root()
        app.create_intermediate()

        assert isinstance(app.signing_mode(), LocalSigning)

    def test_remote_not_contacted_in_local_mode(self):
        config = Config(**{**self.config.__dict__, "remote_endpoint": "https://signer.invalid:8888"})
        app = ClusterPKIApplication(config=config, console_logging=False)
        app.remote_client.is_available = lambda endpoint: pytest.fail("remote signer contacted")

        assert not app.signing_availability().remote_reachable
