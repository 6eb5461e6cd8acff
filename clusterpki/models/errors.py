"""
Error kinds raised by the certificate-lifecycle engine.
"""
from typing import Optional


class PKIError(Exception):
    """Base class for every failure surfaced by the PKI core."""

    retryable = False

    def __init__(self, message: str,
                 subject: Optional[str] = None,
                 role: Optional[str] = None,
                 operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.subject = subject
        self.role = role
        self.operation = operation

    @property
    def kind(self) -> str:
        return type(self).__name__

    def describe(self) -> str:
        """Human readable summary naming the failing operation, subject and role."""
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.subject:
            context.append(f"subject={self.subject}")
        if self.role:
            context.append(f"role={self.role}")
        if context:
            return f"{self.kind}: {self.message} ({', '.join(context)})"
        return f"{self.kind}: {self.message}"


class InvalidSubjectError(PKIError):
    """Malformed or missing subject, or required SANs missing."""


class UnknownRoleError(PKIError):
    """The requested signing profile does not exist."""


class CAAlreadyExistsError(PKIError):
    """A still-valid CA exists and force-create was requested without override."""


class ProfileMismatchError(PKIError):
    """CSR content violates the signing profile."""


class SigningUnavailableError(PKIError):
    """Neither local key material nor a reachable remote signer is usable."""

    retryable = True


class MaterialIOError(PKIError):
    """The material store failed to read or write an artifact."""


class CertificateParseError(PKIError):
    """An artifact could not be parsed as a certificate."""
