"""
Trust distribution: pulling CA material onto a node from a transfer source.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from ..models.errors import CertificateParseError, MaterialIOError
from .ca_issuer import ROOT_NAME, INTERMEDIATE_NAME, CA_SERVER_NAME
from .material_store import MaterialStore, KEY, CERT, CHAIN
from .trust_bundle import CHAIN_NAME

Artifact = Tuple[str, str]

CRITICAL_ARTIFACTS: Tuple[Artifact, ...] = (
    (CERT, INTERMEDIATE_NAME),
    (KEY, INTERMEDIATE_NAME),
    (CHAIN, CHAIN_NAME),
)

OPTIONAL_ARTIFACTS: Tuple[Artifact, ...] = (
    (CERT, ROOT_NAME),
    (CERT, CA_SERVER_NAME),
    (KEY, CA_SERVER_NAME),
)


@dataclass
class TransferResult:
    """Outcome of fetching one artifact."""
    kind: str
    name: str
    data: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.data is not None and self.error is None


@dataclass
class BootstrapReport:
    """Artifacts written, kept and missing after a bootstrap."""
    written: List[Artifact]
    kept: List[Artifact]
    missing_optional: List[Artifact]


class ArtifactTransfer:
    """Bulk file transfer collaborator."""

    def fetch(self, artifacts: Sequence[Artifact], source: str) -> Dict[Artifact, TransferResult]:
        raise NotImplementedError


class DirectoryTransfer(ArtifactTransfer):
    """Reads artifacts from a directory laid out like a PKI directory."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def fetch(self, artifacts: Sequence[Artifact], source: Union[str, Path]) -> Dict[Artifact, TransferResult]:
        source_store = MaterialStore(source)
        results = {}
        for kind, name in artifacts:
            try:
                results[(kind, name)] = TransferResult(kind=kind, name=name, data=source_store.get(kind, name))
            except MaterialIOError as e:
                self.logger.debug(f"Could not fetch {kind} '{name}' from {source}: {e.message}")
                results[(kind, name)] = TransferResult(kind=kind, name=name, error=e.message)
        return results


class TrustDistributionService:
    """Installs CA material fetched from another node into the local store."""

    def __init__(self, store: MaterialStore):
        self.store = store
        self.logger = logging.getLogger(__name__)

    def bootstrap(self, transfer: ArtifactTransfer, source: str, overwrite: bool = False) -> BootstrapReport:
        """
        Fetch and install the intermediate CA, its key and the trust bundle.

        Raises:
            MaterialIOError: If a critical artifact could not be fetched
            CertificateParseError: If the fetched material is inconsistent
        """
        results = transfer.fetch(list(CRITICAL_ARTIFACTS) + list(OPTIONAL_ARTIFACTS), source)

        missing = [artifact for artifact in CRITICAL_ARTIFACTS
                   if artifact not in results or not results[artifact].success]
        if missing:
            names = ", ".join(f"{kind} '{name}'" for kind, name in missing)
            raise MaterialIOError(f"Critical CA material missing from {source}: {names}",
                                  operation="bootstrap")

        self._check_consistency(results)

        entries = []
        missing_optional = []
        for artifact in CRITICAL_ARTIFACTS + OPTIONAL_ARTIFACTS:
            result = results.get(artifact)
            if result is None or not result.success:
                self.logger.warning(f"Optional {artifact[0]} '{artifact[1]}' not available from {source}")
                missing_optional.append(artifact)
                continue
            entries.append((result.kind, result.name, result.data))

        with self.store.lock("ca"):
            if not overwrite and not self._intermediate_current():
                self.logger.info("Local intermediate CA is missing or expired, replacing all CA material")
                overwrite = True
            written = self.store.put_all(entries, overwrite=overwrite)

        kept = [(kind, name) for kind, name, _ in entries if (kind, name) not in written]
        self.logger.info(f"Bootstrapped CA material from {source}: {len(written)} written, {len(kept)} kept")
        return BootstrapReport(written=written, kept=kept, missing_optional=missing_optional)

    def _check_consistency(self, results: Dict[Artifact, TransferResult]) -> None:
        try:
            intermediate = x509.load_pem_x509_certificate(results[(CERT, INTERMEDIATE_NAME)].data)
            chain = x509.load_pem_x509_certificates(results[(CHAIN, CHAIN_NAME)].data)
            key = serialization.load_pem_private_key(results[(KEY, INTERMEDIATE_NAME)].data, password=None)
        except (ValueError, TypeError) as e:
            raise CertificateParseError(f"Fetched CA material is unreadable: {e}", operation="bootstrap")

        key_der = key.public_key().public_bytes(serialization.Encoding.DER,
                                                serialization.PublicFormat.SubjectPublicKeyInfo)
        cert_der = intermediate.public_key().public_bytes(serialization.Encoding.DER,
                                                          serialization.PublicFormat.SubjectPublicKeyInfo)
        if key_der != cert_der:
            raise CertificateParseError("Fetched intermediate key does not match its certificate",
                                        subject=INTERMEDIATE_NAME, operation="bootstrap")
        if not chain or chain[0] != intermediate:
            raise CertificateParseError("Fetched trust bundle does not start with the intermediate CA",
                                        subject=CHAIN_NAME, operation="bootstrap")

    def _intermediate_current(self) -> bool:
        return (self.store.is_current(CERT, INTERMEDIATE_NAME)
                and self.store.exists(KEY, INTERMEDIATE_NAME))
