"""
Security package for the signing service's mTLS layer.
"""
from .models import CertificateBundle, AuthenticationResult, CertificateInfo
from .security_service import SecurityService
from .auth_middleware import MTLSAuthMiddleware, setup_mtls_authentication, require_authentication

__all__ = [
    'CertificateBundle',
    'AuthenticationResult',
    'CertificateInfo',
    'SecurityService',
    'MTLSAuthMiddleware',
    'setup_mtls_authentication',
    'require_authentication'
]
