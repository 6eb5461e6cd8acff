"""
Renewal of expiring certificates and the periodic renewal scheduler.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

import schedule

from ..models.errors import CertificateParseError, InvalidSubjectError, PKIError
from ..models.pki import ClusterTopology, LeafCertificate, RenewalDecision, SigningMode
from .ca_issuer import CAIssuer, CA_SERVER_NAME
from .expiry_auditor import ExpiryAuditor
from .profile_registry import ROOT, INTERMEDIATE, SERVER, PEER


@dataclass
class RenewalReport:
    """Outcome of a batch renewal."""
    renewed: List[LeafCertificate] = field(default_factory=list)
    failed: List[Tuple[str, PKIError]] = field(default_factory=list)
    ca_rotation_needed: List[RenewalDecision] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


class RenewalService:
    """Re-issues certificates with the subject, SANs and role they were issued with."""

    def __init__(self, issuer: CAIssuer, topology: Optional[ClusterTopology] = None):
        self.issuer = issuer
        self.topology = topology or ClusterTopology()
        self.logger = logging.getLogger(__name__)

    def _topology_sans(self, subject: str, role: str) -> Optional[Tuple[str, ...]]:
        member = self.topology.get(subject)
        if member is None:
            return None
        if role == SERVER:
            return ("localhost", "127.0.0.1", member.name, member.host)
        return (member.name, member.host)

    def _sans_for(self, subject: str, role: str, location: Optional[str]) -> Tuple[str, ...]:
        if location is None:
            return self._topology_sans(subject, role)
        try:
            return self.issuer.load_leaf(location, role).sans
        except CertificateParseError:
            sans = self._topology_sans(subject, role)
            if sans is None:
                raise
            self.logger.warning(f"Rebuilding SANs of {subject} ({role}) from the cluster topology")
            return sans

    def renew(self, subject: str, signing_mode: SigningMode) -> List[LeafCertificate]:
        """
        Renew every certificate issued for a subject.

        Members of the configured topology whose certificates are missing
        get a fresh server and peer pair.

        Raises:
            InvalidSubjectError: If nothing was ever issued for the subject
        """
        locations = self.issuer.locate_leaves(subject)
        if self.topology.get(subject) is not None:
            found = {role for role, location in locations if location != CA_SERVER_NAME}
            locations += [(role, None) for role in (SERVER, PEER) if role not in found]
        if not locations:
            raise InvalidSubjectError(f"No certificates have been issued for '{subject}'",
                                      subject=subject, operation="renew")

        renewed = []
        for role, location in locations:
            sans = self._sans_for(subject, role, location)
            self.logger.info(f"Renewing {role} certificate for {subject}")
            renewed.append(self.issuer.issue(
                subject, sans, role, signing_mode, overwrite=True,
                location=location if location == CA_SERVER_NAME else None,
            ))
        return renewed

    def renew_due(self, decisions: Iterable[RenewalDecision], signing_mode: SigningMode) -> RenewalReport:
        """Renew every leaf flagged ``must_renew``; CA certificates are only reported."""
        report = RenewalReport()
        done = set()

        for decision in decisions:
            if not decision.needs_renewal:
                continue
            if decision.role in (ROOT, INTERMEDIATE):
                self.logger.warning(f"{decision.subject} needs rotation; CA rotation is never automatic")
                report.ca_rotation_needed.append(decision)
                continue
            if decision.subject in done:
                continue
            done.add(decision.subject)

            try:
                report.renewed.extend(self.renew(decision.subject, signing_mode))
            except PKIError as e:
                self.logger.error(f"Renewal of {decision.subject} failed: {e.describe()}")
                report.failed.append((decision.subject, e))

        return report


class RenewalScheduler:
    """Runs a daily audit-and-renew job in a background thread."""

    def __init__(self,
                 auditor: ExpiryAuditor,
                 renewal_service: RenewalService,
                 mode_provider: Callable[[], SigningMode],
                 threshold_days: int = 30,
                 poll_seconds: int = 60):
        self.auditor = auditor
        self.renewal_service = renewal_service
        self.mode_provider = mode_provider
        self.threshold_days = threshold_days
        self.poll_seconds = poll_seconds
        self.scheduler = schedule.Scheduler()
        self.logger = logging.getLogger(__name__)
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._running = False
        self.last_report: Optional[RenewalReport] = None

    def schedule_daily(self, check_time: str = "03:00") -> None:
        """
        Schedule the daily renewal check.

        Args:
            check_time: Time to run checks in HH:MM format (24-hour)
        """
        try:
            time.strptime(check_time, "%H:%M")
        except ValueError:
            raise ValueError(f"Invalid time format: {check_time}. Use HH:MM format.")

        self.scheduler.clear()
        self.scheduler.every().day.at(check_time).do(self.run_once)
        self.logger.info(f"Scheduled daily certificate renewal check at {check_time}")

    def run_once(self, now: Optional[datetime] = None) -> RenewalReport:
        """Audit the store and renew what is due."""
        result = self.auditor.run(now=now, threshold_days=self.threshold_days)
        summary = result.summary()
        self.logger.info(
            f"Renewal audit: {summary['ok']} ok, {summary['warn']} warn, "
            f"{summary['must_renew']} must renew, {summary['errors']} unreadable"
        )

        due = result.needing_renewal()
        if not due:
            self.last_report = RenewalReport()
            return self.last_report

        report = self.renewal_service.renew_due(due, self.mode_provider())
        self.logger.info(f"Renewed {len(report.renewed)} certificates, {len(report.failed)} failures")
        self.last_report = report
        return report

    def start(self, check_time: str = "03:00") -> None:
        if self._running:
            self.logger.warning("Renewal scheduler is already running")
            return

        self.schedule_daily(check_time)
        self._stop.clear()
        self._running = True
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()
        self.logger.info("Renewal scheduler started")

    def stop(self) -> None:
        if not self._running:
            return
        self._stop.set()
        self._running = False
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self.scheduler.clear()
        self.logger.info("Renewal scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    def next_run(self) -> Optional[datetime]:
        if not self.scheduler.jobs:
            return None
        return self.scheduler.next_run

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.scheduler.run_pending()
            except PKIError as e:
                self.logger.error(f"Scheduled renewal failed: {e.describe()}")
            self._stop.wait(self.poll_seconds)
