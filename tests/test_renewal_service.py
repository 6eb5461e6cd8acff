"""
Tests for certificate renewal and the renewal scheduler.
"""
import tempfile
import unittest
from datetime import timedelta
from unittest.mock import Mock

from clusterpki.models.errors import InvalidSubjectError, SigningUnavailableError
from clusterpki.models.pki import ClusterTopology, LocalSigning, RenewalAction, RenewalDecision
from clusterpki.services.expiry_auditor import ExpiryAuditor
from clusterpki.services.material_store import CERT
from clusterpki.services.renewal_service import RenewalScheduler, RenewalService

from pki_testing import FixedClock, make_hierarchy


class TestRenewalService(unittest.TestCase):
    """Test cases for RenewalService."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.clock = FixedClock()
        self.issuer, self.root, self.intermediate = make_hierarchy(self.temp_dir.name, clock=self.clock)
        self.local = LocalSigning(self.intermediate)
        self.topology = ClusterTopology.parse("node-a=10.0.0.1,node-b=10.0.0.2")
        self.service = RenewalService(self.issuer, self.topology)

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_renew_keeps_identity(self):
        server, peer = self.issuer.issue_member(self.topology.get("node-a"), self.local)
        self.clock.advance(days=340)

        renewed = self.service.renew("node-a", self.local)

        self.assertEqual([leaf.role for leaf in renewed], ["server", "peer"])
        self.assertEqual(set(renewed[0].sans), set(server.sans))
        self.assertEqual(set(renewed[1].sans), set(peer.sans))
        self.assertNotEqual(renewed[0].serial_number, server.serial_number)
        self.assertEqual(renewed[0].not_after, self.clock.now + timedelta(hours=8760))

    def test_renew_client(self):
        original = self.issuer.issue_client("admin", self.local)
        renewed = self.service.renew("admin", self.local)
        self.assertEqual(len(renewed), 1)
        self.assertEqual(renewed[0].location, original.location)
        self.assertNotEqual(renewed[0].serial_number, original.serial_number)

    def test_renew_unknown_subject(self):
        with self.assertRaises(InvalidSubjectError) as cm:
            self.service.renew("ghost", self.local)
        self.assertEqual(cm.exception.subject, "ghost")

    def test_renew_missing_member_from_topology(self):
        renewed = self.service.renew("node-b", self.local)
        self.assertEqual(set(renewed[0].sans), {"localhost", "127.0.0.1", "node-b", "10.0.0.2"})
        self.assertEqual(set(renewed[1].sans), {"node-b", "10.0.0.2"})

    def test_renew_restores_missing_member_role(self):
        self.issuer.issue("node-a", ["localhost", "127.0.0.1", "node-a", "10.0.0.1"], "server", self.local)

        renewed = self.service.renew("node-a", self.local)

        self.assertEqual([leaf.role for leaf in renewed], ["server", "peer"])
        self.assertEqual(set(renewed[1].sans), {"node-a", "10.0.0.1"})

    def test_renew_unreadable_certificate_uses_topology(self):
        self.issuer.issue_member(self.topology.get("node-a"), self.local)
        self.issuer.store.put(CERT, "certs/node-a/peer", b"corrupt", overwrite=True)

        renewed = self.service.renew("node-a", self.local)
        self.assertEqual(set(renewed[1].sans), {"node-a", "10.0.0.1"})

    def test_renew_due(self):
        self.issuer.issue_member(self.topology.get("node-a"), self.local)
        decisions = [
            RenewalDecision("node-a", RenewalAction.MUST_RENEW, 10, role="server"),
            RenewalDecision("node-a", RenewalAction.MUST_RENEW, 10, role="peer"),
            RenewalDecision("intermediate-ca", RenewalAction.MUST_RENEW, 5, role="intermediate"),
            RenewalDecision("node-b", RenewalAction.WARN, 40, role="server"),
            RenewalDecision("ghost", RenewalAction.MUST_RENEW, 1, role="client"),
        ]

        report = self.service.renew_due(decisions, self.local)

        self.assertEqual(len(report.renewed), 2)
        self.assertEqual([d.subject for d in report.ca_rotation_needed], ["intermediate-ca"])
        self.assertEqual([subject for subject, _ in report.failed], ["ghost"])
        self.assertIsInstance(report.failed[0][1], InvalidSubjectError)
        self.assertFalse(report.success)

    def test_renew_due_records_signing_failures(self):
        self.issuer.issue_client("admin", self.local)
        public_only = self.issuer.load_intermediate()
        public_only.private_key = None

        report = self.service.renew_due(
            [RenewalDecision("admin", RenewalAction.MUST_RENEW, 3, role="client")],
            LocalSigning(public_only)
        )
        self.assertEqual(report.renewed, [])
        self.assertIsInstance(report.failed[0][1], SigningUnavailableError)


class TestRenewalScheduler(unittest.TestCase):
    """Test cases for RenewalScheduler."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.clock = FixedClock()
        self.issuer, _, intermediate = make_hierarchy(self.temp_dir.name, clock=self.clock)
        self.local = LocalSigning(intermediate)
        self.issuer.issue_client("admin", self.local)
        self.scheduler = RenewalScheduler(
            ExpiryAuditor(self.issuer.store),
            RenewalService(self.issuer),
            lambda: self.local,
        )

    def tearDown(self):
        self.scheduler.stop()
        self.temp_dir.cleanup()

    def test_run_once_nothing_due(self):
        report = self.scheduler.run_once(now=self.clock.now)
        self.assertEqual(report.renewed, [])
        self.assertTrue(report.success)

    def test_run_once_renews_due(self):
        self.clock.advance(days=350)
        report = self.scheduler.run_once(now=self.clock.now)
        self.assertEqual([leaf.subject for leaf in report.renewed], ["admin"])
        self.assertIs(self.scheduler.last_report, report)

    def test_mode_provider_not_called_when_nothing_due(self):
        provider = Mock(return_value=self.local)
        self.scheduler.mode_provider = provider
        self.scheduler.run_once(now=self.clock.now)
        provider.assert_not_called()

    def test_schedule_daily(self):
        self.scheduler.schedule_daily("04:30")
        self.assertEqual(len(self.scheduler.scheduler.jobs), 1)
        self.assertIsNotNone(self.scheduler.next_run())

        with self.assertRaises(ValueError):
            self.scheduler.schedule_daily("25:99")

    def test_start_and_stop(self):
        self.scheduler.start("04:30")
        self.assertTrue(self.scheduler.is_running())
        self.scheduler.stop()
        self.assertFalse(self.scheduler.is_running())
        self.assertIsNone(self.scheduler.next_run())


if __name__ == '__main__':
    unittest.main()
