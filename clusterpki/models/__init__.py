"""
Models package for the cluster PKI.
"""

from .config import Config, ConfigValidationError, ConfigValidationResult
from .errors import (
    PKIError,
    InvalidSubjectError,
    UnknownRoleError,
    CAAlreadyExistsError,
    ProfileMismatchError,
    SigningUnavailableError,
    MaterialIOError,
    CertificateParseError,
)
from .pki import (
    KeySpec,
    SigningProfile,
    CertificateAuthority,
    LeafCertificate,
    TrustBundle,
    RenewalAction,
    RenewalDecision,
    AuditTarget,
    ClusterMember,
    ClusterTopology,
    LocalSigning,
    RemoteSigning,
    SigningMode,
    SigningAvailability,
)

__all__ = [
    'Config',
    'ConfigValidationError',
    'ConfigValidationResult',
    'PKIError',
    'InvalidSubjectError',
    'UnknownRoleError',
    'CAAlreadyExistsError',
    'ProfileMismatchError',
    'SigningUnavailableError',
    'MaterialIOError',
    'CertificateParseError',
    'KeySpec',
    'SigningProfile',
    'CertificateAuthority',
    'LeafCertificate',
    'TrustBundle',
    'RenewalAction',
    'RenewalDecision',
    'AuditTarget',
    'ClusterMember',
    'ClusterTopology',
    'LocalSigning',
    'RemoteSigning',
    'SigningMode',
    'SigningAvailability',
]
