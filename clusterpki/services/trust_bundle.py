"""
Trust bundle construction and chain verification.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature

from ..models.errors import CertificateParseError
from ..models.pki import CertificateAuthority, LeafCertificate, TrustBundle
from .material_store import MaterialStore, CHAIN


CHAIN_NAME = "ca-chain"


def _basic_constraints(cert: x509.Certificate) -> Optional[x509.BasicConstraints]:
    try:
        return cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return None


class TrustBundleBuilder:
    """Builds and checks the intermediate + root verification chain."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def build(self, root: CertificateAuthority, intermediate: CertificateAuthority) -> TrustBundle:
        """Build the bundle, intermediate first and root second.

        Raises:
            ValueError: If the intermediate was not issued by the root
        """
        if intermediate.certificate.issuer != root.certificate.subject:
            raise ValueError("Intermediate CA was not issued by the given root CA")
        try:
            intermediate.certificate.verify_directly_issued_by(root.certificate)
        except (InvalidSignature, TypeError) as e:
            raise ValueError(f"Intermediate CA signature does not verify with the given root CA: {e}")
        return TrustBundle(certificates=(intermediate.certificate, root.certificate))

    def parse(self, pem: bytes) -> TrustBundle:
        """Parse a PEM chain into a bundle, preserving order."""
        try:
            certificates = x509.load_pem_x509_certificates(pem)
        except ValueError as e:
            raise CertificateParseError(f"Invalid trust bundle: {e}", operation="parse_bundle")
        return TrustBundle(certificates=tuple(certificates))

    def publish(self, bundle: TrustBundle, store: MaterialStore, name: str = CHAIN_NAME) -> None:
        """Write the bundle to the store, replacing whatever was there."""
        store.put(CHAIN, name, bundle.pem, overwrite=True)
        self.logger.info(f"Published trust bundle '{name}' with {len(bundle)} certificates")

    def verify(self, leaf: Union[LeafCertificate, x509.Certificate], bundle: TrustBundle,
               at: Optional[datetime] = None) -> bool:
        """Check that the leaf chains up to the self-signed root of the bundle."""
        certificate = leaf.certificate if isinstance(leaf, LeafCertificate) else leaf
        try:
            self.check_chain(certificate, bundle, at)
            return True
        except (ValueError, TypeError, InvalidSignature) as e:
            self.logger.debug(f"Chain verification failed for {certificate.subject.rfc4514_string()}: {e}")
            return False

    def check_chain(self, certificate: x509.Certificate, bundle: TrustBundle,
                    at: Optional[datetime] = None) -> None:
        """Raise ValueError/InvalidSignature if the chain does not verify."""
        at = at or datetime.now(timezone.utc)
        candidates = list(bundle)
        current = certificate
        self._check_window(current, at)
        ca_depth = 0

        for _ in range(len(candidates) + 1):
            issuer = next((c for c in candidates if c.subject == current.issuer), None)
            if issuer is None:
                raise ValueError(f"No issuer for {current.subject.rfc4514_string()} in trust bundle")

            constraints = _basic_constraints(issuer)
            if constraints is None or not constraints.ca:
                raise ValueError(f"{issuer.subject.rfc4514_string()} is not a CA")
            if current is not certificate:
                ca_depth += 1
            if constraints.path_length is not None and ca_depth > constraints.path_length:
                raise ValueError(f"Path length exceeded below {issuer.subject.rfc4514_string()}")

            self._check_window(issuer, at)
            current.verify_directly_issued_by(issuer)

            if issuer.subject == issuer.issuer:
                issuer.verify_directly_issued_by(issuer)
                return
            current = issuer

        raise ValueError("Trust bundle does not terminate in a self-signed root")

    def _check_window(self, cert: x509.Certificate, at: datetime) -> None:
        if not (cert.not_valid_before_utc <= at <= cert.not_valid_after_utc):
            raise ValueError(f"{cert.subject.rfc4514_string()} is not valid at {at.isoformat()}")
