"""
Domain models for the cluster certificate hierarchy.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import FrozenSet, Iterator, List, Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .errors import InvalidSubjectError, SigningUnavailableError


SERVER_AUTH = "server_auth"
CLIENT_AUTH = "client_auth"


@dataclass(frozen=True)
class KeySpec:
    """Key algorithm and size used when generating key material."""
    algorithm: str = "rsa"
    size: int = 2048
    curve: str = "P-256"

    def __post_init__(self):
        if self.algorithm not in ("rsa", "ecdsa"):
            raise ValueError(f"Unsupported key algorithm: {self.algorithm}")
        if self.algorithm == "rsa" and self.size < 2048:
            raise ValueError("RSA keys must be at least 2048 bits")
        if self.algorithm == "ecdsa" and self.curve not in ("P-256", "P-384"):
            raise ValueError(f"Unsupported elliptic curve: {self.curve}")

    def describe(self) -> str:
        if self.algorithm == "rsa":
            return f"rsa-{self.size}"
        return f"ecdsa-{self.curve}"


@dataclass(frozen=True)
class SigningProfile:
    """Named policy controlling one class of issued certificate."""
    name: str
    key: KeySpec
    validity: timedelta
    is_ca: bool = False
    path_length: Optional[int] = None
    usages: FrozenSet[str] = frozenset()
    requires_san: bool = False
    allowed_san_types: FrozenSet[str] = frozenset({"dns", "ip"})
    issuer_role: Optional[str] = None

    @property
    def is_leaf(self) -> bool:
        return not self.is_ca


def _pem(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(serialization.Encoding.PEM)


@dataclass
class CertificateAuthority:
    """One CA level of the hierarchy (root or intermediate)."""
    name: str
    role: str
    certificate: x509.Certificate
    private_key: Optional[object] = None
    issuer: Optional["CertificateAuthority"] = None
    created: bool = False

    @property
    def subject(self) -> x509.Name:
        return self.certificate.subject

    @property
    def serial_number(self) -> int:
        return self.certificate.serial_number

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def certificate_pem(self) -> bytes:
        return _pem(self.certificate)

    @property
    def can_sign(self) -> bool:
        return self.private_key is not None

    def is_valid_at(self, at: datetime) -> bool:
        return self.not_before <= at <= self.not_after


@dataclass
class LeafCertificate:
    """End-entity certificate bound to a cluster member or client identity."""
    subject: str
    sans: Tuple[str, ...]
    role: str
    certificate: x509.Certificate
    private_key: Optional[object] = None
    issuer_name: Optional[str] = None
    location: Optional[str] = None
    created: bool = True

    @property
    def serial_number(self) -> int:
        return self.certificate.serial_number

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def certificate_pem(self) -> bytes:
        return _pem(self.certificate)


@dataclass(frozen=True)
class TrustBundle:
    """Ordered verification chain: intermediate first, root last."""
    certificates: Tuple[x509.Certificate, ...]

    def __iter__(self) -> Iterator[x509.Certificate]:
        return iter(self.certificates)

    def __len__(self) -> int:
        return len(self.certificates)

    @property
    def pem(self) -> bytes:
        return b"".join(_pem(cert) for cert in self.certificates)


class RenewalAction(Enum):
    """Outcome of an expiry check."""
    OK = "ok"
    WARN = "warn"
    MUST_RENEW = "must_renew"


@dataclass(frozen=True)
class RenewalDecision:
    """Ephemeral result of auditing one certificate."""
    subject: str
    action: RenewalAction
    remaining_days: Optional[int]
    role: Optional[str] = None
    location: Optional[str] = None
    ok: bool = True
    error: Optional[str] = None
    not_after: Optional[datetime] = None

    @property
    def needs_renewal(self) -> bool:
        return self.action is RenewalAction.MUST_RENEW


@dataclass(frozen=True)
class AuditTarget:
    """A certificate handed to the expiry auditor."""
    subject: str
    pem: Optional[bytes]
    role: Optional[str] = None
    location: Optional[str] = None
    load_error: Optional[str] = None


@dataclass(frozen=True)
class ClusterMember:
    """A single member of the cluster."""
    name: str
    host: str

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise InvalidSubjectError("Cluster member name must not be empty")
        if not self.host or not self.host.strip():
            raise InvalidSubjectError("Cluster member host must not be empty", subject=self.name)


@dataclass(frozen=True)
class ClusterTopology:
    """Ordered, immutable set of cluster members."""
    members: Tuple[ClusterMember, ...] = ()

    def __post_init__(self):
        names = [member.name for member in self.members]
        if len(names) != len(set(names)):
            raise InvalidSubjectError("Cluster member names must be unique")

    def __iter__(self) -> Iterator[ClusterMember]:
        return iter(self.members)

    def __len__(self) -> int:
        return len(self.members)

    def get(self, name: str) -> Optional[ClusterMember]:
        for member in self.members:
            if member.name == name:
                return member
        return None

    @classmethod
    def parse(cls, value: str) -> "ClusterTopology":
        """Build a topology from ``name=host,name=host`` notation."""
        members: List[ClusterMember] = []
        for item in (value or "").split(","):
            item = item.strip()
            if not item:
                continue
            if "=" not in item:
                raise InvalidSubjectError(f"Invalid cluster member entry: {item!r} (expected name=host)")
            name, host = item.split("=", 1)
            members.append(ClusterMember(name=name.strip(), host=host.strip()))
        return cls(members=tuple(members))


@dataclass(frozen=True)
class LocalSigning:
    """Sign directly with local intermediate key material."""
    intermediate: CertificateAuthority


@dataclass(frozen=True)
class RemoteSigning:
    """Delegate signing to a remote CA service."""
    endpoint: str
    label: str


SigningMode = Union[LocalSigning, RemoteSigning]


@dataclass
class SigningAvailability:
    """Which signing paths the orchestration layer found usable."""
    intermediate: Optional[CertificateAuthority] = None
    remote_endpoint: Optional[str] = None
    remote_label: str = "etcd-intermediate-ca"
    remote_reachable: bool = False
    reasons: List[str] = field(default_factory=list)

    @property
    def local_available(self) -> bool:
        return self.intermediate is not None and self.intermediate.can_sign

    @property
    def remote_available(self) -> bool:
        return bool(self.remote_endpoint) and self.remote_reachable

    def select(self, preference: str = "auto") -> SigningMode:
        """Pick a signing mode; remote wins in ``auto`` when it is reachable."""
        if preference not in ("auto", "local", "remote"):
            raise ValueError(f"Unknown signing mode preference: {preference}")

        if preference in ("auto", "remote") and self.remote_available:
            return RemoteSigning(endpoint=self.remote_endpoint, label=self.remote_label)
        if preference in ("auto", "local") and self.local_available:
            return LocalSigning(intermediate=self.intermediate)

        detail = "; ".join(self.reasons) if self.reasons else "no intermediate key and no reachable remote signer"
        raise SigningUnavailableError(
            f"No usable signing path for mode '{preference}': {detail}",
            operation="select_signing_mode"
        )
