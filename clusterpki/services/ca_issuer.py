"""
CA issuer: root and intermediate creation, leaf signing and persistence.
"""
import logging
from contextlib import nullcontext
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from ..models.errors import (
    CAAlreadyExistsError,
    CertificateParseError,
    InvalidSubjectError,
    MaterialIOError,
    ProfileMismatchError,
    SigningUnavailableError,
)
from ..models.pki import (
    CertificateAuthority,
    ClusterMember,
    LeafCertificate,
    LocalSigning,
    RemoteSigning,
    SigningMode,
    SigningProfile,
    TrustBundle,
)
from .csr_generator import (
    CSRGenerator,
    USAGE_OIDS,
    normalize_sans,
    parse_san,
    san_type,
    sans_from_extension,
    validate_subject,
)
from .material_store import MaterialStore, KEY, CERT, CHAIN, CSR
from .profile_registry import ProfileRegistry, ROOT, INTERMEDIATE, SERVER, PEER, CLIENT
from .remote_signer import RemoteSigningClient
from .trust_bundle import TrustBundleBuilder, CHAIN_NAME


ROOT_NAME = "root-ca"
INTERMEDIATE_NAME = "intermediate-ca"
CA_SERVER_NAME = "ca-server"
CERTS_DIR = "certs"
CLIENTS_DIR = "clients"

BACKDATE = timedelta(minutes=5)


def leaf_location(subject: str, role: str) -> str:
    """Logical store name of a subject's certificate for one role."""
    if role == CLIENT:
        return f"{CERTS_DIR}/{CLIENTS_DIR}/{subject}"
    return f"{CERTS_DIR}/{subject}/{role}"


def chain_location(location: str) -> str:
    """Trust bundle copy that sits next to an issued certificate."""
    if "/" not in location:
        return CHAIN_NAME
    return location.rsplit("/", 1)[0] + "/" + CHAIN_NAME


def _key_pem(private_key) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def _spki(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )


def _hash_for(private_key):
    if isinstance(private_key, ec.EllipticCurvePrivateKey) and private_key.curve.key_size >= 384:
        return hashes.SHA384()
    return hashes.SHA256()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CAIssuer:
    """Creates the CA hierarchy and signs leaf certificates."""

    def __init__(self,
                 store: MaterialStore,
                 registry: Optional[ProfileRegistry] = None,
                 generator: Optional[CSRGenerator] = None,
                 bundle_builder: Optional[TrustBundleBuilder] = None,
                 remote_client: Optional[RemoteSigningClient] = None,
                 root_common_name: str = "etcd Root CA",
                 intermediate_common_name: str = "etcd Intermediate CA",
                 clock: Optional[Callable[[], datetime]] = None,
                 logging_service=None):
        self.store = store
        self.registry = registry or ProfileRegistry()
        self.generator = generator or CSRGenerator()
        self.bundle_builder = bundle_builder or TrustBundleBuilder()
        self.remote_client = remote_client
        self.root_common_name = root_common_name
        self.intermediate_common_name = intermediate_common_name
        self.clock = clock or _utcnow
        self.logging_service = logging_service
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config, store: MaterialStore,
                    remote_client: Optional[RemoteSigningClient] = None,
                    logging_service=None) -> "CAIssuer":
        return cls(
            store=store,
            registry=ProfileRegistry.from_config(config),
            generator=CSRGenerator(organization=config.organization),
            remote_client=remote_client,
            root_common_name=config.root_common_name,
            intermediate_common_name=config.intermediate_common_name,
            logging_service=logging_service,
        )

    def _measure(self, operation: str, **extra):
        if self.logging_service is None:
            return nullcontext()
        return self.logging_service.measure_performance(operation, extra or None)

    # Loading

    def _load_certificate(self, name: str) -> x509.Certificate:
        try:
            return x509.load_pem_x509_certificate(self.store.get(CERT, name))
        except ValueError as e:
            raise CertificateParseError(f"Stored certificate '{name}' is not valid PEM: {e}",
                                        subject=name, operation="load")

    def _load_key(self, name: str):
        if not self.store.exists(KEY, name):
            return None
        try:
            return serialization.load_pem_private_key(self.store.get(KEY, name), password=None)
        except (ValueError, TypeError) as e:
            raise CertificateParseError(f"Stored key '{name}' is not a valid private key: {e}",
                                        subject=name, operation="load")

    def load_root(self) -> Optional[CertificateAuthority]:
        """Load the persisted root CA, or None if there is none."""
        if not self.store.exists(CERT, ROOT_NAME):
            return None
        return CertificateAuthority(
            name=ROOT_NAME,
            role=ROOT,
            certificate=self._load_certificate(ROOT_NAME),
            private_key=self._load_key(ROOT_NAME),
        )

    def load_intermediate(self, root: Optional[CertificateAuthority] = None) -> Optional[CertificateAuthority]:
        """Load the persisted intermediate CA, or None if there is none."""
        if not self.store.exists(CERT, INTERMEDIATE_NAME):
            return None
        if root is None and self.store.exists(CERT, ROOT_NAME):
            root = self.load_root()
        return CertificateAuthority(
            name=INTERMEDIATE_NAME,
            role=INTERMEDIATE,
            certificate=self._load_certificate(INTERMEDIATE_NAME),
            private_key=self._load_key(INTERMEDIATE_NAME),
            issuer=root,
        )

    def load_leaf(self, location: str, role: str) -> LeafCertificate:
        """Load an issued certificate (and its key when present) from the store."""
        certificate = self._load_certificate(location)
        common_names = certificate.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
        subject = common_names[0].value if common_names else location
        return LeafCertificate(
            subject=subject,
            sans=sans_from_extension(certificate.extensions),
            role=role,
            certificate=certificate,
            private_key=self._load_key(location),
            issuer_name=certificate.issuer.rfc4514_string(),
            location=location,
            created=False,
        )

    def trust_bundle(self) -> TrustBundle:
        """Current trust bundle: the published chain, else built from the CAs."""
        if self.store.exists(CHAIN, CHAIN_NAME):
            return self.bundle_builder.parse(self.store.get(CHAIN, CHAIN_NAME))
        root = self.load_root()
        intermediate = self.load_intermediate(root)
        if root is None or intermediate is None:
            raise MaterialIOError("No trust bundle available: root or intermediate CA missing",
                                  operation="trust_bundle")
        return self._build_bundle(root, intermediate, "trust_bundle")

    # CA creation

    def _idempotency_check(self, existing: Optional[CertificateAuthority], force: bool,
                           override: bool, now: datetime) -> bool:
        """Return True if the existing CA should be kept."""
        if existing is None:
            return False
        if not existing.is_valid_at(now):
            self.logger.warning(f"{existing.name} expired on {existing.not_after.isoformat()}, regenerating")
            return False
        if not force:
            return True
        if not override:
            raise CAAlreadyExistsError(
                f"{existing.name} is still valid until {existing.not_after.isoformat()}; "
                "pass override to replace it",
                subject=existing.name, role=existing.role, operation=f"init_{existing.role}"
            )
        self.logger.warning(f"Replacing still-valid {existing.name} on explicit override")
        return False

    def init_root(self, force: bool = False, override: bool = False) -> CertificateAuthority:
        """
        Create the root CA unless a valid one already exists.

        Args:
            force: Request creation even if a valid root exists
            override: Confirm replacing a still-valid root when forcing

        Returns:
            The root CA; ``created`` is False when the existing root was kept

        Raises:
            CAAlreadyExistsError: force without override against a valid root
        """
        with self._measure("init_root"), self.store.lock("ca"):
            now = self.clock()
            existing = self.load_root()
            if self._idempotency_check(existing, force, override, now):
                self.logger.info(f"Root CA already exists (serial {existing.serial_number:x}), keeping it")
                return existing

            profile = self.registry.profile_for(ROOT)
            private_key, csr = self.generator.generate(self.root_common_name, (), profile)
            name = csr.subject
            certificate = self._ca_builder(
                name, name, private_key.public_key(), profile,
                not_before=now - BACKDATE, not_after=now + profile.validity,
                issuer_public_key=private_key.public_key(),
            ).sign(private_key, _hash_for(private_key))

            self.store.put_all([
                (KEY, ROOT_NAME, _key_pem(private_key)),
                (CERT, ROOT_NAME, certificate.public_bytes(serialization.Encoding.PEM)),
            ], overwrite=True)

            self.logger.info(
                f"Created root CA '{self.root_common_name}' valid until "
                f"{certificate.not_valid_after_utc.isoformat()}"
            )
            return CertificateAuthority(name=ROOT_NAME, role=ROOT, certificate=certificate,
                                        private_key=private_key, created=True)

    def init_intermediate(self, root: CertificateAuthority, force: bool = False,
                          override: bool = False) -> CertificateAuthority:
        """
        Create the intermediate CA signed by the root, unless a valid one exists.

        The trust bundle is rebuilt whenever the intermediate is (re)created.
        """
        if root is None or not root.can_sign:
            raise SigningUnavailableError("Root CA private key is required to sign the intermediate",
                                          role=INTERMEDIATE, operation="init_intermediate")

        with self._measure("init_intermediate"), self.store.lock("ca"):
            now = self.clock()
            if not root.is_valid_at(now):
                raise SigningUnavailableError("Root CA is expired; rotate the root first",
                                              role=INTERMEDIATE, operation="init_intermediate")

            existing = self.load_intermediate(root)
            if existing is not None and not self._issued_by(existing.certificate, root.certificate):
                self.logger.warning("Existing intermediate CA was not issued by the current root, regenerating")
                existing = None

            if self._idempotency_check(existing, force, override, now):
                self.logger.info(
                    f"Intermediate CA already exists (serial {existing.serial_number:x}), keeping it"
                )
                if not self.store.exists(CHAIN, CHAIN_NAME):
                    self.bundle_builder.publish(self._build_bundle(root, existing, "init_intermediate"), self.store)
                return existing

            profile = self.registry.profile_for(INTERMEDIATE)
            private_key, csr = self.generator.generate(self.intermediate_common_name, (), profile)

            not_before = max(now - BACKDATE, root.not_before)
            not_after = min(now + profile.validity, root.not_after)
            certificate = self._ca_builder(
                csr.subject, root.subject, csr.public_key(), profile,
                not_before=not_before, not_after=not_after,
                issuer_public_key=root.certificate.public_key(),
            ).sign(root.private_key, _hash_for(root.private_key))

            self.store.put_all([
                (KEY, INTERMEDIATE_NAME, _key_pem(private_key)),
                (CSR, INTERMEDIATE_NAME, csr.public_bytes(serialization.Encoding.PEM)),
                (CERT, INTERMEDIATE_NAME, certificate.public_bytes(serialization.Encoding.PEM)),
            ], overwrite=True)

            intermediate = CertificateAuthority(name=INTERMEDIATE_NAME, role=INTERMEDIATE,
                                                certificate=certificate, private_key=private_key,
                                                issuer=root, created=True)
            self.bundle_builder.publish(self._build_bundle(root, intermediate, "init_intermediate"), self.store)

            self.logger.info(
                f"Created intermediate CA '{self.intermediate_common_name}' valid until "
                f"{not_after.isoformat()}"
            )
            return intermediate

    def _issued_by(self, certificate: x509.Certificate, issuer: x509.Certificate) -> bool:
        if certificate.issuer != issuer.subject:
            return False
        try:
            certificate.verify_directly_issued_by(issuer)
            return True
        except (ValueError, TypeError, InvalidSignature):
            return False

    def _ca_builder(self, subject: x509.Name, issuer: x509.Name, public_key,
                    profile: SigningProfile, not_before: datetime, not_after: datetime,
                    issuer_public_key) -> x509.CertificateBuilder:
        return x509.CertificateBuilder().subject_name(
            subject
        ).issuer_name(
            issuer
        ).public_key(
            public_key
        ).serial_number(
            x509.random_serial_number()
        ).not_valid_before(
            not_before
        ).not_valid_after(
            not_after
        ).add_extension(
            x509.BasicConstraints(ca=True, path_length=profile.path_length), critical=True
        ).add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False
            ), critical=True
        ).add_extension(
            x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False
        ).add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_public_key), critical=False
        )

    # Leaf signing

    def _check_csr(self, csr: x509.CertificateSigningRequest, profile: SigningProfile,
                   sans: Optional[Iterable[str]], subject: Optional[str]) -> Tuple[str, ...]:
        """Validate a CSR against the profile and return the SANs to certify."""
        def mismatch(message):
            return ProfileMismatchError(message, subject=subject, role=profile.name, operation="sign")

        if profile.is_ca:
            raise mismatch(f"The {profile.name} profile cannot be used to sign leaf certificates")
        if not csr.is_signature_valid:
            raise mismatch("CSR signature is invalid")
        if not csr.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME):
            raise mismatch("CSR has no common name")

        try:
            constraints = csr.extensions.get_extension_for_class(x509.BasicConstraints).value
            if constraints.ca:
                raise mismatch("CSR requests a CA certificate")
        except x509.ExtensionNotFound:
            pass

        try:
            requested = set(csr.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value)
            allowed = {USAGE_OIDS[usage] for usage in profile.usages}
            extra = requested - allowed
            if extra:
                names = ", ".join(sorted(oid.dotted_string for oid in extra))
                raise mismatch(f"CSR requests key usages not allowed by the {profile.name} profile: {names}")
        except x509.ExtensionNotFound:
            pass

        if sans is not None:
            try:
                san_values = normalize_sans(sans)
            except InvalidSubjectError as e:
                raise InvalidSubjectError(e.message, subject=subject, role=profile.name, operation="sign")
        else:
            san_values = sans_from_extension(csr.extensions)

        if profile.requires_san and not san_values:
            raise mismatch(f"The {profile.name} profile requires at least one subject alternative name")

        disallowed = sorted({san_type(parse_san(v)) for v in san_values} - set(profile.allowed_san_types))
        if disallowed:
            raise mismatch(f"SAN types not allowed by the {profile.name} profile: {', '.join(disallowed)}")

        return san_values

    def sign(self, csr: x509.CertificateSigningRequest, profile: SigningProfile,
             signing_mode: SigningMode, sans: Optional[Iterable[str]] = None,
             subject: Optional[str] = None) -> LeafCertificate:
        """
        Sign a leaf CSR locally or through the remote signer.

        Args:
            csr: Certificate signing request
            profile: Leaf signing profile
            signing_mode: LocalSigning or RemoteSigning
            sans: Optional SAN override replacing the CSR's SANs
            subject: Subject name used for error context

        Raises:
            ProfileMismatchError: CSR content violates the profile
            SigningUnavailableError: No usable signing path
        """
        if subject is None:
            common_names = csr.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
            subject = common_names[0].value if common_names else None

        san_values = self._check_csr(csr, profile, sans, subject)

        with self._measure("sign", subject=subject, role=profile.name):
            if isinstance(signing_mode, LocalSigning):
                certificate = self._sign_local(csr, profile, signing_mode.intermediate, san_values, subject)
            elif isinstance(signing_mode, RemoteSigning):
                certificate = self._sign_remote(csr, profile, signing_mode, sans, subject)
            else:
                raise SigningUnavailableError(f"Unsupported signing mode: {signing_mode!r}",
                                              subject=subject, role=profile.name, operation="sign")

        return LeafCertificate(
            subject=subject,
            sans=sans_from_extension(certificate.extensions),
            role=profile.name,
            certificate=certificate,
            issuer_name=certificate.issuer.rfc4514_string(),
        )

    def _sign_local(self, csr: x509.CertificateSigningRequest, profile: SigningProfile,
                    intermediate: Optional[CertificateAuthority], san_values: Tuple[str, ...],
                    subject: Optional[str]) -> x509.Certificate:
        if intermediate is None or not intermediate.can_sign:
            raise SigningUnavailableError("Local signing requires the intermediate CA private key",
                                          subject=subject, role=profile.name, operation="sign")
        now = self.clock()
        if not intermediate.is_valid_at(now):
            raise SigningUnavailableError("Intermediate CA is not valid at the current time",
                                          subject=subject, role=profile.name, operation="sign")

        not_before = max(now - BACKDATE, intermediate.not_before)
        not_after = now + profile.validity
        if not_after > intermediate.not_after:
            self.logger.warning(
                f"Clamping {subject} ({profile.name}) expiry to the intermediate CA expiry "
                f"{intermediate.not_after.isoformat()}"
            )
            not_after = intermediate.not_after

        public_key = csr.public_key()
        builder = x509.CertificateBuilder().subject_name(
            csr.subject
        ).issuer_name(
            intermediate.subject
        ).public_key(
            public_key
        ).serial_number(
            x509.random_serial_number()
        ).not_valid_before(
            not_before
        ).not_valid_after(
            not_after
        ).add_extension(
            x509.BasicConstraints(ca=False, path_length=None), critical=True
        ).add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=isinstance(public_key, rsa.RSAPublicKey),
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False
            ), critical=True
        ).add_extension(
            x509.ExtendedKeyUsage([USAGE_OIDS[usage] for usage in sorted(profile.usages)]), critical=False
        ).add_extension(
            x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False
        ).add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(intermediate.certificate.public_key()),
            critical=False
        )

        if san_values:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([parse_san(v) for v in san_values]), critical=False
            )

        certificate = builder.sign(intermediate.private_key, _hash_for(intermediate.private_key))
        self.logger.info(f"Signed {profile.name} certificate for {subject} (serial {certificate.serial_number:x})")
        return certificate

    def _sign_remote(self, csr: x509.CertificateSigningRequest, profile: SigningProfile,
                     mode: RemoteSigning, sans: Optional[Iterable[str]],
                     subject: Optional[str]) -> x509.Certificate:
        if self.remote_client is None:
            raise SigningUnavailableError("No remote signing client configured",
                                          subject=subject, role=profile.name, operation="sign")

        hosts = list(normalize_sans(sans)) if sans is not None else None
        pem = self.remote_client.sign(
            mode.endpoint,
            csr.public_bytes(serialization.Encoding.PEM),
            profile.name,
            mode.label,
            hosts=hosts,
            subject=subject,
        )
        try:
            certificate = x509.load_pem_x509_certificate(pem)
        except ValueError as e:
            raise SigningUnavailableError(f"Remote signer returned an invalid certificate: {e}",
                                          subject=subject, role=profile.name, operation="sign")

        if _spki(certificate.public_key()) != _spki(csr.public_key()):
            raise SigningUnavailableError("Remote signer returned a certificate for a different key",
                                          subject=subject, role=profile.name, operation="sign")
        return certificate

    # Issuance with persistence

    def issue(self, subject: str, sans: Iterable[str], role: str, signing_mode: SigningMode,
              overwrite: bool = False, location: Optional[str] = None) -> LeafCertificate:
        """
        Generate, sign and persist a leaf certificate for one subject and role.

        Existing unexpired material is returned unchanged unless overwrite is set.
        New material replaces old material only once everything is generated.
        """
        profile = self.registry.profile_for(role)
        subject = validate_subject(subject)
        if role != CLIENT and subject == CLIENTS_DIR and location is None:
            raise InvalidSubjectError(f"'{CLIENTS_DIR}' is reserved for client certificates",
                                      subject=subject, role=role, operation="issue")
        location = location or leaf_location(subject, role)

        with self._measure("issue", subject=subject, role=role), self.store.lock(f"subject-{location}"):
            if not overwrite and self.store.is_current(CERT, location) and self.store.exists(KEY, location):
                existing = self.load_leaf(location, role)
                self.logger.info(
                    f"{role} certificate for {subject} is valid until "
                    f"{existing.not_after.isoformat()}, keeping it"
                )
                return existing

            private_key, csr = self.generator.generate(subject, sans, profile)
            leaf = self.sign(csr, profile, signing_mode, subject=subject)
            chain_pem = self._chain_for(signing_mode, subject, role)

            self.store.put_all([
                (KEY, location, _key_pem(private_key)),
                (CSR, location, csr.public_bytes(serialization.Encoding.PEM)),
                (CERT, location, leaf.certificate_pem),
                (CHAIN, chain_location(location), chain_pem),
            ], overwrite=True)

        leaf.private_key = private_key
        leaf.location = location
        leaf.created = True
        return leaf

    def _build_bundle(self, root: CertificateAuthority, intermediate: CertificateAuthority,
                      operation: str, subject: Optional[str] = None,
                      role: Optional[str] = None) -> TrustBundle:
        try:
            return self.bundle_builder.build(root, intermediate)
        except ValueError as e:
            raise CertificateParseError(f"Cannot build the trust bundle: {e}",
                                        subject=subject, role=role, operation=operation)

    def _chain_for(self, signing_mode: SigningMode, subject: str, role: str) -> bytes:
        if self.store.exists(CHAIN, CHAIN_NAME):
            return self.store.get(CHAIN, CHAIN_NAME)
        if isinstance(signing_mode, LocalSigning) and signing_mode.intermediate.issuer is not None:
            bundle = self._build_bundle(signing_mode.intermediate.issuer, signing_mode.intermediate,
                                        "issue", subject=subject, role=role)
            self.bundle_builder.publish(bundle, self.store)
            return bundle.pem
        raise MaterialIOError("Trust bundle is missing; bootstrap the CA chain before issuing",
                              subject=subject, role=role, operation="issue")

    def issue_member(self, member: ClusterMember, signing_mode: SigningMode,
                     overwrite: bool = False) -> List[LeafCertificate]:
        """Issue the server and peer certificates of a cluster member."""
        server = self.issue(member.name, ["localhost", "127.0.0.1", member.name, member.host],
                            SERVER, signing_mode, overwrite=overwrite)
        peer = self.issue(member.name, [member.name, member.host], PEER, signing_mode, overwrite=overwrite)
        return [server, peer]

    def issue_client(self, name: str, signing_mode: SigningMode, overwrite: bool = False) -> LeafCertificate:
        """Issue a client certificate for a cluster consumer."""
        return self.issue(name, (), CLIENT, signing_mode, overwrite=overwrite)

    def issue_ca_server(self, hosts: Iterable[str], overwrite: bool = False) -> LeafCertificate:
        """Issue the signing service's own TLS certificate with the local intermediate."""
        intermediate = self.load_intermediate()
        if intermediate is None:
            raise SigningUnavailableError("Intermediate CA is missing; create it first",
                                          subject=CA_SERVER_NAME, role=SERVER, operation="issue_ca_server")
        sans = ["localhost", "127.0.0.1"] + [h for h in hosts if h]
        return self.issue(CA_SERVER_NAME, sans, SERVER, LocalSigning(intermediate),
                          overwrite=overwrite, location=CA_SERVER_NAME)

    def locate_leaves(self, subject: str) -> List[Tuple[str, str]]:
        """Find the (role, location) pairs already issued for a subject."""
        found = []
        for role in (SERVER, PEER, CLIENT):
            location = leaf_location(subject, role)
            if self.store.exists(CERT, location):
                found.append((role, location))
        if subject == CA_SERVER_NAME and self.store.exists(CERT, CA_SERVER_NAME):
            found.append((SERVER, CA_SERVER_NAME))
        return found
