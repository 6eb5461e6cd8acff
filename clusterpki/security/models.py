"""
Security models for the signing service's mTLS layer.
"""
from dataclasses import dataclass
from typing import Optional
from datetime import datetime


@dataclass
class CertificateBundle:
    """Paths of the material the signing service serves TLS with."""
    server_cert_path: str
    server_key_path: str
    ca_bundle_path: str
    ca_bundle_pem: bytes


@dataclass
class AuthenticationResult:
    """Result of client certificate authentication."""
    is_authenticated: bool
    client_id: Optional[str]
    error_message: Optional[str]


@dataclass
class CertificateInfo:
    """Information about a certificate."""
    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    is_valid: bool
    fingerprint: str
