"""
Security service for the signing service's mTLS certificates and client validation.
"""
import ssl
import logging
from typing import Optional
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from datetime import datetime, timezone

from ..models.errors import MaterialIOError
from ..services.ca_issuer import CA_SERVER_NAME
from ..services.material_store import MaterialStore, KEY, CERT, CHAIN
from ..services.trust_bundle import TrustBundleBuilder, CHAIN_NAME
from .models import CertificateBundle, AuthenticationResult, CertificateInfo


class SecurityService:
    """Service for handling mTLS authentication against the cluster trust bundle."""

    def __init__(self, config, store: MaterialStore, bundle_builder: Optional[TrustBundleBuilder] = None):
        """Initialize the security service with configuration and the PKI store."""
        self.config = config
        self.store = store
        self.bundle_builder = bundle_builder or TrustBundleBuilder()
        self.logger = logging.getLogger(__name__)
        self._certificate_bundle: Optional[CertificateBundle] = None

    def load_certificates(self) -> Optional[CertificateBundle]:
        """
        Load the signing service certificate, key and trust bundle.

        Raises:
            MaterialIOError: If mTLS is enabled and any of them is missing
        """
        if not self.config.enable_mtls:
            self.logger.info("mTLS disabled, skipping certificate loading")
            self._certificate_bundle = None
            return None

        for kind, name in ((CERT, CA_SERVER_NAME), (KEY, CA_SERVER_NAME), (CHAIN, CHAIN_NAME)):
            if not self.store.exists(kind, name):
                raise MaterialIOError(
                    f"mTLS requires {kind} '{name}'; run create-ca-server first",
                    subject=name, operation="load_certificates"
                )

        self._certificate_bundle = CertificateBundle(
            server_cert_path=str(self.store.path_for(CERT, CA_SERVER_NAME)),
            server_key_path=str(self.store.path_for(KEY, CA_SERVER_NAME)),
            ca_bundle_path=str(self.store.path_for(CHAIN, CHAIN_NAME)),
            ca_bundle_pem=self.store.get(CHAIN, CHAIN_NAME),
        )
        self.logger.info("Successfully loaded certificate bundle")
        return self._certificate_bundle

    def validate_client_certificate(self, cert_pem: str) -> AuthenticationResult:
        """Validate a client certificate against the trust bundle."""
        try:
            cert = x509.load_pem_x509_certificate(cert_pem.encode())
        except ValueError as e:
            self.logger.warning(f"Unparseable client certificate: {e}")
            return AuthenticationResult(
                is_authenticated=False,
                client_id=None,
                error_message=f"Certificate validation error: {e}"
            )

        cert_info = self._get_certificate_info(cert)
        if not cert_info.is_valid:
            return AuthenticationResult(
                is_authenticated=False,
                client_id=None,
                error_message="Certificate has expired"
            )

        if not self._allows_client_auth(cert):
            return AuthenticationResult(
                is_authenticated=False,
                client_id=None,
                error_message="Certificate is not valid for client authentication"
            )

        if not self._validate_against_ca(cert):
            return AuthenticationResult(
                is_authenticated=False,
                client_id=None,
                error_message="Certificate not signed by trusted CA"
            )

        client_id = self._extract_client_id(cert)
        self.logger.info(f"Successfully authenticated client: {client_id}")
        return AuthenticationResult(
            is_authenticated=True,
            client_id=client_id,
            error_message=None
        )

    def _get_certificate_info(self, cert: x509.Certificate) -> CertificateInfo:
        """Extract information from a certificate."""
        now = datetime.now(timezone.utc)
        not_before = cert.not_valid_before_utc
        not_after = cert.not_valid_after_utc

        return CertificateInfo(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            serial_number=str(cert.serial_number),
            not_before=not_before,
            not_after=not_after,
            is_valid=not_before <= now <= not_after,
            fingerprint=cert.fingerprint(hashes.SHA256()).hex()
        )

    def _allows_client_auth(self, cert: x509.Certificate) -> bool:
        try:
            usages = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
        except x509.ExtensionNotFound:
            return False
        return ExtendedKeyUsageOID.CLIENT_AUTH in usages

    def _validate_against_ca(self, cert: x509.Certificate) -> bool:
        """Validate certificate against the loaded trust bundle."""
        if not self._certificate_bundle:
            self.logger.error("CA validation failed: certificate bundle not loaded")
            return False
        bundle = self.bundle_builder.parse(self._certificate_bundle.ca_bundle_pem)
        return self.bundle_builder.verify(cert, bundle)

    def _extract_client_id(self, cert: x509.Certificate) -> str:
        """Extract client ID from certificate subject."""
        for attribute in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
            return attribute.value
        return str(cert.serial_number)

    def setup_mtls_context(self) -> ssl.SSLContext:
        """Create SSL context configured for mTLS."""
        if not self._certificate_bundle:
            raise ValueError("Certificate bundle not loaded. Call load_certificates() first.")

        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(
            certfile=self._certificate_bundle.server_cert_path,
            keyfile=self._certificate_bundle.server_key_path
        )
        context.load_verify_locations(cafile=self._certificate_bundle.ca_bundle_path)

        if self.config.client_cert_required:
            context.verify_mode = ssl.CERT_REQUIRED
        else:
            context.verify_mode = ssl.CERT_OPTIONAL

        context.minimum_version = ssl.TLSVersion.TLSv1_2

        self.logger.info("SSL context configured for mTLS")
        return context

    def get_certificate_info(self, cert_pem: str) -> CertificateInfo:
        """Get detailed information about a certificate."""
        cert = x509.load_pem_x509_certificate(cert_pem.encode())
        return self._get_certificate_info(cert)
