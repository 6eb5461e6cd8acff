"""
Services package for the cluster PKI engine.
"""

from .config_service import ConfigService
from .logging_service import LoggingService
from .profile_registry import ProfileRegistry
from .csr_generator import CSRGenerator
from .material_store import MaterialStore
from .trust_bundle import TrustBundleBuilder
from .remote_signer import RemoteSigningClient
from .ca_issuer import CAIssuer
from .expiry_auditor import ExpiryAuditor, ExpiryAudit, audit
from .renewal_service import RenewalService, RenewalScheduler, RenewalReport
from .distribution_service import DirectoryTransfer, TrustDistributionService

__all__ = [
    'ConfigService',
    'LoggingService',
    'ProfileRegistry',
    'CSRGenerator',
    'MaterialStore',
    'TrustBundleBuilder',
    'RemoteSigningClient',
    'CAIssuer',
    'ExpiryAuditor',
    'ExpiryAudit',
    'audit',
    'RenewalService',
    'RenewalScheduler',
    'RenewalReport',
    'DirectoryTransfer',
    'TrustDistributionService'
]
