"""
Key pair and certificate-signing-request generation.
"""
import ipaddress
import logging
import re
from typing import Iterable, List, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..models.errors import InvalidSubjectError
from ..models.pki import KeySpec, SigningProfile, SERVER_AUTH, CLIENT_AUTH


PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]

USAGE_OIDS = {
    SERVER_AUTH: ExtendedKeyUsageOID.SERVER_AUTH,
    CLIENT_AUTH: ExtendedKeyUsageOID.CLIENT_AUTH,
}

ROLE_UNITS = {
    "root": "Root CA",
    "intermediate": "Intermediate CA",
    "server": "Server",
    "peer": "Peer",
    "client": "Client",
}

_HOSTNAME_RE = re.compile(r"^(\*\.)?[A-Za-z0-9_-]{1,63}(\.[A-Za-z0-9_-]{1,63})*\.?$")

_CURVES = {
    "P-256": ec.SECP256R1,
    "P-384": ec.SECP384R1,
}


def generate_private_key(key: KeySpec) -> PrivateKey:
    """Generate a private key for the given KeySpec."""
    if key.algorithm == "ecdsa":
        return ec.generate_private_key(_CURVES[key.curve]())
    return rsa.generate_private_key(public_exponent=65537, key_size=key.size)


def signature_hash(key: KeySpec):
    if key.algorithm == "ecdsa" and key.curve == "P-384":
        return hashes.SHA384()
    return hashes.SHA256()


def validate_subject(subject: str) -> str:
    """Return the normalized subject or raise InvalidSubjectError."""
    if subject is None or not str(subject).strip():
        raise InvalidSubjectError("Subject must not be empty", operation="generate")
    subject = str(subject).strip()
    if len(subject) > 64:
        raise InvalidSubjectError("Subject must be at most 64 characters", subject=subject, operation="generate")
    if any(ord(ch) < 32 or ch in "/\\" for ch in subject) or ".." in subject:
        raise InvalidSubjectError("Subject contains invalid characters", subject=subject, operation="generate")
    return subject


def parse_san(value: str) -> x509.GeneralName:
    """Turn a hostname or IP literal into a GeneralName."""
    value = str(value).strip()
    if not value:
        raise InvalidSubjectError("Subject alternative names must not be empty")
    try:
        return x509.IPAddress(ipaddress.ip_address(value))
    except ValueError:
        pass
    if not _HOSTNAME_RE.match(value):
        raise InvalidSubjectError(f"Invalid subject alternative name: {value!r}")
    return x509.DNSName(value.lower())


def san_type(name: x509.GeneralName) -> str:
    return "ip" if isinstance(name, x509.IPAddress) else "dns"


def normalize_sans(sans: Iterable[str]) -> Tuple[str, ...]:
    """Validate SANs and return them deduplicated in their original order."""
    seen: List[str] = []
    for value in sans or ():
        name = parse_san(value)
        text = str(name.value)
        if text not in seen:
            seen.append(text)
    return tuple(seen)


def sans_from_extension(extensions: x509.Extensions) -> Tuple[str, ...]:
    """Read SAN values (as text) from a CSR or certificate."""
    try:
        ext = extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return ()
    values = [str(name.value) for name in ext.value
              if isinstance(name, (x509.DNSName, x509.IPAddress))]
    return tuple(values)


class CSRGenerator:
    """Produces private keys and CSRs from a subject template."""

    def __init__(self, organization: str = "etcd"):
        self.organization = organization
        self.logger = logging.getLogger(__name__)

    def build_name(self, subject: str, role: str) -> x509.Name:
        """Subject name template: CN=<subject>, O=<org>, OU=<org> <Role>."""
        unit = ROLE_UNITS.get(role, role.title())
        return x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.organization),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, f"{self.organization} {unit}"),
            x509.NameAttribute(NameOID.COMMON_NAME, subject),
        ])

    def generate(self, subject: str, sans: Iterable[str],
                 profile: SigningProfile) -> Tuple[PrivateKey, x509.CertificateSigningRequest]:
        """
        Generate a private key and a CSR for a subject.

        Args:
            subject: Common name of the certificate
            sans: Hostnames and IP literals the certificate is valid for
            profile: Signing profile selecting key type and usages

        Returns:
            Tuple of (private key, CSR); nothing is persisted

        Raises:
            InvalidSubjectError: If the subject is empty or required SANs are missing
        """
        subject = validate_subject(subject)
        try:
            san_values = normalize_sans(sans)
        except InvalidSubjectError as e:
            raise InvalidSubjectError(e.message, subject=subject, role=profile.name, operation="generate")

        if profile.requires_san and not san_values:
            raise InvalidSubjectError(
                f"The {profile.name} profile requires at least one subject alternative name",
                subject=subject, role=profile.name, operation="generate"
            )

        general_names = [parse_san(value) for value in san_values]
        disallowed = sorted({san_type(n) for n in general_names} - set(profile.allowed_san_types))
        if disallowed:
            raise InvalidSubjectError(
                f"SAN types not allowed by the {profile.name} profile: {', '.join(disallowed)}",
                subject=subject, role=profile.name, operation="generate"
            )

        private_key = generate_private_key(profile.key)

        builder = x509.CertificateSigningRequestBuilder().subject_name(
            self.build_name(subject, profile.name)
        ).add_extension(
            x509.BasicConstraints(ca=profile.is_ca, path_length=profile.path_length),
            critical=True,
        )

        if profile.usages:
            builder = builder.add_extension(
                x509.ExtendedKeyUsage([USAGE_OIDS[usage] for usage in sorted(profile.usages)]),
                critical=False,
            )

        if general_names:
            builder = builder.add_extension(
                x509.SubjectAlternativeName(general_names),
                critical=False,
            )

        csr = builder.sign(private_key, signature_hash(profile.key))

        self.logger.debug(
            f"Generated {profile.key.describe()} key and CSR for {subject} ({profile.name})"
        )
        return private_key, csr
