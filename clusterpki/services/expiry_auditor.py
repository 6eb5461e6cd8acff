"""
Expiry auditing of issued certificates.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from ..models.errors import MaterialIOError
from ..models.pki import (
    AuditTarget,
    CertificateAuthority,
    LeafCertificate,
    RenewalAction,
    RenewalDecision,
)
from .ca_issuer import ROOT_NAME, INTERMEDIATE_NAME, CA_SERVER_NAME, CERTS_DIR, CLIENTS_DIR
from .material_store import MaterialStore, CERT
from .profile_registry import ROOT, INTERMEDIATE, SERVER, PEER, CLIENT
from .trust_bundle import CHAIN_NAME


DEFAULT_THRESHOLD_DAYS = 30


def remaining_days(not_after: datetime, now: datetime) -> int:
    """Whole days left before expiry, rounded down (negative once expired)."""
    return (not_after - now) // timedelta(days=1)


def classify(days_left: int, threshold_days: int) -> RenewalAction:
    if days_left < threshold_days:
        return RenewalAction.MUST_RENEW
    if days_left < 2 * threshold_days:
        return RenewalAction.WARN
    return RenewalAction.OK


def _as_target(item: Any) -> AuditTarget:
    if isinstance(item, AuditTarget):
        return item
    if isinstance(item, LeafCertificate):
        return AuditTarget(subject=item.subject, pem=item.certificate_pem, role=item.role, location=item.location)
    if isinstance(item, CertificateAuthority):
        return AuditTarget(subject=item.name, pem=item.certificate_pem, role=item.role, location=item.name)
    if isinstance(item, x509.Certificate):
        return AuditTarget(subject=item.subject.rfc4514_string(),
                           pem=item.public_bytes(serialization.Encoding.PEM))
    if isinstance(item, bytes):
        return AuditTarget(subject="<pem>", pem=item)
    raise TypeError(f"Cannot audit object of type {type(item).__name__}")


class ExpiryAudit:
    """Lazy, restartable sequence of renewal decisions."""

    def __init__(self, now: datetime, targets: Iterable[Any], threshold_days: int = DEFAULT_THRESHOLD_DAYS):
        if threshold_days <= 0:
            raise ValueError("threshold_days must be positive")
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        self.now = now
        self.threshold_days = threshold_days
        self._targets = tuple(_as_target(t) for t in targets)
        self.logger = logging.getLogger(__name__)

    def __iter__(self) -> Iterator[RenewalDecision]:
        return (self._decide(target) for target in self._targets)

    def __len__(self) -> int:
        return len(self._targets)

    def _decide(self, target: AuditTarget) -> RenewalDecision:
        if target.load_error or target.pem is None:
            return self._failed(target, target.load_error or "certificate data missing")

        try:
            certificate = x509.load_pem_x509_certificate(target.pem)
        except ValueError as e:
            return self._failed(target, f"CertificateParseError: {e}")

        not_after = certificate.not_valid_after_utc
        days_left = remaining_days(not_after, self.now)
        action = classify(days_left, self.threshold_days)

        if action is not RenewalAction.OK:
            self.logger.warning(f"{target.subject} ({target.role or 'certificate'}): "
                                f"{days_left} days until expiry, {action.value}")

        return RenewalDecision(
            subject=target.subject,
            action=action,
            remaining_days=days_left,
            role=target.role,
            location=target.location,
            not_after=not_after,
        )

    def _failed(self, target: AuditTarget, reason: str) -> RenewalDecision:
        self.logger.error(f"Cannot audit {target.subject} ({target.role or 'certificate'}): {reason}")
        return RenewalDecision(
            subject=target.subject,
            action=RenewalAction.MUST_RENEW,
            remaining_days=None,
            role=target.role,
            location=target.location,
            ok=False,
            error=reason,
        )

    def needing_renewal(self) -> List[RenewalDecision]:
        return [d for d in self if d.needs_renewal]

    def summary(self) -> Dict[str, int]:
        counts = {action.value: 0 for action in RenewalAction}
        counts["errors"] = 0
        for decision in self:
            counts[decision.action.value] += 1
            if not decision.ok:
                counts["errors"] += 1
        return counts


def audit(now: datetime, certificates: Iterable[Any],
          threshold_days: int = DEFAULT_THRESHOLD_DAYS) -> ExpiryAudit:
    """
    Classify certificates by remaining validity.

    ``must_renew`` below the threshold, ``warn`` below twice the threshold,
    ``ok`` otherwise. Unparseable certificates are reported as failed
    ``must_renew`` decisions instead of aborting the audit.
    """
    return ExpiryAudit(now, certificates, threshold_days)


class ExpiryAuditor:
    """Audits everything persisted in a material store."""

    def __init__(self, store: MaterialStore, threshold_days: int = DEFAULT_THRESHOLD_DAYS):
        self.store = store
        self.threshold_days = threshold_days
        self.logger = logging.getLogger(__name__)

    def _target(self, subject: str, role: str, location: str, required: bool = True) -> Optional[AuditTarget]:
        if not self.store.exists(CERT, location):
            if not required:
                return None
            return AuditTarget(subject=subject, pem=None, role=role, location=location,
                               load_error=f"certificate not found: {location}")
        try:
            return AuditTarget(subject=subject, pem=self.store.get(CERT, location), role=role, location=location)
        except MaterialIOError as e:
            return AuditTarget(subject=subject, pem=None, role=role, location=location, load_error=str(e))

    def collect_targets(self, subject: Optional[str] = None) -> List[AuditTarget]:
        """
        Enumerate the certificates to audit.

        Without a subject: root and intermediate CAs, the signing service
        certificate, every member's server and peer certificates and every
        client certificate.
        """
        targets: List[Optional[AuditTarget]] = []

        if subject is None:
            targets.append(self._target(ROOT_NAME, ROOT, ROOT_NAME, required=False))
            targets.append(self._target(INTERMEDIATE_NAME, INTERMEDIATE, INTERMEDIATE_NAME, required=False))
            targets.append(self._target(CA_SERVER_NAME, SERVER, CA_SERVER_NAME, required=False))
            members = [d for d in self.store.list_dirs(CERTS_DIR) if d != CLIENTS_DIR]
        else:
            members = [subject] if subject in self.store.list_dirs(CERTS_DIR) else []

        for member in members:
            targets.append(self._target(member, SERVER, f"{CERTS_DIR}/{member}/{SERVER}"))
            targets.append(self._target(member, PEER, f"{CERTS_DIR}/{member}/{PEER}"))

        for location in self.store.list_names(CERT, f"{CERTS_DIR}/{CLIENTS_DIR}"):
            name = location.rsplit("/", 1)[-1]
            if name == CHAIN_NAME or (subject is not None and name != subject):
                continue
            targets.append(self._target(name, CLIENT, location))

        return [t for t in targets if t is not None]

    def run(self, now: Optional[datetime] = None, threshold_days: Optional[int] = None,
            subject: Optional[str] = None) -> ExpiryAudit:
        """Audit the store at ``now`` (default: current UTC time)."""
        now = now or datetime.now(timezone.utc)
        return audit(now, self.collect_targets(subject), threshold_days or self.threshold_days)
