"""
Client for a remote CA signing service.
"""
import logging
from typing import Iterable, Optional, Tuple
from urllib.parse import urlparse, urlunparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..models.errors import (
    PKIError,
    InvalidSubjectError,
    UnknownRoleError,
    ProfileMismatchError,
    SigningUnavailableError,
)


SIGN_PATH = "/api/v1/cfssl/sign"
HEALTH_PATH = "/health"

REASON_ERRORS = {
    "invalid_subject": InvalidSubjectError,
    "unknown_role": UnknownRoleError,
    "profile_mismatch": ProfileMismatchError,
    "unknown_label": ProfileMismatchError,
    "signing_unavailable": SigningUnavailableError,
}


class RemoteSigningClient:
    """Sends CSRs to a remote signing endpoint and returns signed PEM certificates."""

    def __init__(self,
                 timeout: int = 10,
                 max_retries: int = 0,
                 backoff_factor: float = 0.5,
                 ca_bundle_path: Optional[str] = None,
                 client_cert: Optional[Tuple[str, str]] = None,
                 session: Optional[requests.Session] = None):
        """
        Initialize the remote signing client.

        Args:
            timeout: Request timeout in seconds
            max_retries: Bounded number of transport-level retries
            backoff_factor: Factor for exponential backoff between retries
            ca_bundle_path: CA bundle used to verify the signing service
            client_cert: (cert path, key path) presented for mutual TLS
            session: Pre-built session (tests)
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.ca_bundle_path = ca_bundle_path
        self.client_cert = client_cert
        self.logger = logging.getLogger(__name__)
        self.session = session or self._create_session()

    @classmethod
    def from_config(cls, config) -> "RemoteSigningClient":
        client_cert = None
        if config.remote_client_cert_path and config.remote_client_key_path:
            client_cert = (config.remote_client_cert_path, config.remote_client_key_path)
        return cls(
            timeout=config.request_timeout_seconds,
            max_retries=config.max_retry_attempts,
            ca_bundle_path=config.remote_ca_bundle_path,
            client_cert=client_cert,
        )

    def _create_session(self) -> requests.Session:
        """Create a requests session with a bounded retry strategy."""
        session = requests.Session()

        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=self.backoff_factor,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET", "POST"],
            raise_on_status=False
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({
            'Accept': 'application/json',
            'User-Agent': 'cluster-pki',
        })
        if self.ca_bundle_path:
            session.verify = self.ca_bundle_path
        if self.client_cert:
            session.cert = self.client_cert

        return session

    def sign_url(self, endpoint: str) -> str:
        """Resolve the sign URL; a bare host URL gets the default sign path."""
        parsed = urlparse(endpoint)
        if parsed.path in ("", "/"):
            return urlunparse(parsed._replace(path=SIGN_PATH))
        return endpoint

    def health_url(self, endpoint: str) -> str:
        parsed = urlparse(endpoint)
        return urlunparse(parsed._replace(path=HEALTH_PATH, query="", fragment=""))

    def is_available(self, endpoint: str) -> bool:
        """Check the signing service's health endpoint."""
        try:
            response = self.session.get(self.health_url(endpoint), timeout=self.timeout)
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            self.logger.info(f"Remote signer at {endpoint} is not reachable: {e}")
            return False

    def sign(self, endpoint: str, csr_pem: bytes, profile: str, label: str,
             hosts: Optional[Iterable[str]] = None, subject: Optional[str] = None) -> bytes:
        """
        Ask the remote CA to sign a CSR.

        Args:
            endpoint: Signing service URL
            csr_pem: PEM-encoded CSR
            profile: Signing profile name (server, peer, client)
            label: Signing label identifying the CA on the service
            hosts: Optional SAN override
            subject: Subject used for error context

        Returns:
            PEM-encoded signed certificate

        Raises:
            SigningUnavailableError: On timeouts, connection failures or unusable responses
            PKIError subclass: When the service rejects the request with a reason
        """
        payload = {
            "certificate_request": csr_pem.decode("ascii"),
            "profile": profile,
            "label": label,
        }
        if hosts is not None:
            payload["hosts"] = list(hosts)

        url = self.sign_url(endpoint)
        self.logger.info(f"Requesting remote signature for {subject or 'CSR'} ({profile}) from {url}")

        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise SigningUnavailableError(
                f"Remote signer at {url} timed out after {self.timeout}s: {e}",
                subject=subject, role=profile, operation="remote_sign"
            )
        except requests.exceptions.RequestException as e:
            raise SigningUnavailableError(
                f"Remote signer at {url} is unreachable: {e}",
                subject=subject, role=profile, operation="remote_sign"
            )

        try:
            body = response.json()
        except ValueError:
            raise SigningUnavailableError(
                f"Remote signer returned a non-JSON response (HTTP {response.status_code})",
                subject=subject, role=profile, operation="remote_sign"
            )

        if not isinstance(body, dict):
            raise SigningUnavailableError(
                f"Remote signer returned an unusable response (HTTP {response.status_code})",
                subject=subject, role=profile, operation="remote_sign"
            )

        if response.status_code == 200 and body.get("success"):
            result = body.get("result")
            certificate = result.get("certificate") if isinstance(result, dict) else None
            if not isinstance(certificate, str) or not certificate:
                raise SigningUnavailableError(
                    "Remote signer response did not include a certificate",
                    subject=subject, role=profile, operation="remote_sign"
                )
            return certificate.encode("ascii")

        raise self._error_from_response(response.status_code, body, subject, profile)

    def _error_from_response(self, status_code: int, body: dict,
                             subject: Optional[str], profile: str) -> PKIError:
        errors = body.get("errors")
        first = errors[0] if isinstance(errors, list) and errors else {}
        if not isinstance(first, dict):
            first = {}
        reason = first.get("reason")
        message = first.get("message") or f"Remote signer rejected the request (HTTP {status_code})"
        error_class = SigningUnavailableError
        if isinstance(reason, str):
            error_class = REASON_ERRORS.get(reason, SigningUnavailableError)
        return error_class(f"Remote signer: {message}", subject=subject, role=profile, operation="remote_sign")
