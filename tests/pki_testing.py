"""
Shared helpers for the cluster PKI tests.
"""
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from clusterpki.models.pki import KeySpec
from clusterpki.services.ca_issuer import CAIssuer
from clusterpki.services.csr_generator import CSRGenerator
from clusterpki.services.material_store import MaterialStore
from clusterpki.services.profile_registry import ProfileRegistry


EC_KEY = KeySpec(algorithm="ecdsa", curve="P-256")

FIXED_NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now=FIXED_NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def make_issuer(pki_dir, clock=None, remote_client=None, key=EC_KEY):
    store = MaterialStore(pki_dir, clock=clock)
    return CAIssuer(
        store=store,
        registry=ProfileRegistry(key),
        generator=CSRGenerator(),
        remote_client=remote_client,
        clock=clock,
    )


def make_hierarchy(pki_dir, clock=None, remote_client=None, key=EC_KEY):
    """Issuer with a root and intermediate already in place."""
    issuer = make_issuer(pki_dir, clock=clock, remote_client=remote_client, key=key)
    root = issuer.init_root()
    intermediate = issuer.init_intermediate(root)
    return issuer, root, intermediate


def self_signed(not_after, not_before=None, common_name="test"):
    """Small self-signed certificate with a chosen expiry."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    return x509.CertificateBuilder().subject_name(
        name
    ).issuer_name(
        name
    ).public_key(
        key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        not_before or (not_after - timedelta(days=400))
    ).not_valid_after(
        not_after
    ).sign(key, hashes.SHA256())
