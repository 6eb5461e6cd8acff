"""
Authentication middleware for mTLS client certificate validation.
"""
import logging
import urllib.parse
from functools import wraps
from flask import request, g, jsonify
from typing import Optional

from .security_service import SecurityService


class MTLSAuthMiddleware:
    """WSGI middleware that authenticates the client certificate of each request."""

    def __init__(self, app, security_service: SecurityService, config):
        self.app = app
        self.security_service = security_service
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.wsgi_app = app.wsgi_app
        app.wsgi_app = self

    def __call__(self, environ, start_response):
        client_cert_pem = self._extract_client_certificate(environ)

        environ['mtls.client_cert'] = client_cert_pem
        environ['mtls.authenticated'] = False
        environ['mtls.client_id'] = None
        environ['mtls.error'] = None

        if self.config.enable_mtls and client_cert_pem:
            auth_result = self.security_service.validate_client_certificate(client_cert_pem)

            environ['mtls.authenticated'] = auth_result.is_authenticated
            environ['mtls.client_id'] = auth_result.client_id
            environ['mtls.error'] = auth_result.error_message

            if auth_result.is_authenticated:
                self.logger.info(f"Client authenticated: {auth_result.client_id}")
            else:
                self.logger.warning(f"Client authentication failed: {auth_result.error_message}")

        return self.wsgi_app(environ, start_response)

    def _extract_client_certificate(self, environ) -> Optional[str]:
        """Extract the client certificate from the WSGI environment."""
        # Apache mod_ssl, or the TLS peer certificate from the built-in server
        client_cert = environ.get('SSL_CLIENT_CERT')
        if client_cert:
            return client_cert

        # Forwarded headers are client-controlled unless a terminating proxy sets them
        if not self.config.trust_proxy_headers:
            return None

        # Reverse proxies forwarding a URL-encoded certificate
        client_cert = environ.get('HTTP_SSL_CLIENT_CERT')
        if client_cert:
            return urllib.parse.unquote(client_cert)

        # nginx proxy_set_header X-SSL-CERT
        client_cert = environ.get('HTTP_X_SSL_CERT')
        if client_cert:
            cert_content = client_cert.replace(' ', '\n')
            cert_content = cert_content.replace('-----BEGIN\nCERTIFICATE-----', '-----BEGIN CERTIFICATE-----')
            cert_content = cert_content.replace('-----END\nCERTIFICATE-----', '-----END CERTIFICATE-----')
            if not cert_content.startswith('-----BEGIN CERTIFICATE-----'):
                cert_content = f"-----BEGIN CERTIFICATE-----\n{cert_content}\n-----END CERTIFICATE-----"
            return cert_content

        return None


def setup_mtls_authentication(app, security_service: SecurityService, config):
    """Set up mTLS authentication for the Flask app."""

    MTLSAuthMiddleware(app, security_service, config)

    @app.before_request
    def authenticate_request():
        if request.endpoint == 'health_check':
            g.client_id = 'anonymous'
            g.authenticated = True
            return

        if not config.enable_mtls:
            g.client_id = 'anonymous'
            g.authenticated = True
            return

        authenticated = request.environ.get('mtls.authenticated', False)
        client_id = request.environ.get('mtls.client_id')
        error_message = request.environ.get('mtls.error')

        if not authenticated:
            if not request.environ.get('mtls.client_cert'):
                return jsonify({
                    'success': False,
                    'result': None,
                    'errors': [{
                        'reason': 'unauthenticated',
                        'message': 'mTLS authentication requires a valid client certificate'
                    }]
                }), 401
            return jsonify({
                'success': False,
                'result': None,
                'errors': [{
                    'reason': 'unauthenticated',
                    'message': error_message or 'Invalid client certificate'
                }]
            }), 401

        g.client_id = client_id
        g.authenticated = True

    return app


def require_authentication(f):
    """Decorator to require authentication for specific endpoints."""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not getattr(g, 'authenticated', False):
            return jsonify({
                'success': False,
                'result': None,
                'errors': [{
                    'reason': 'unauthenticated',
                    'message': 'This endpoint requires client certificate authentication'
                }]
            }), 401
        return f(*args, **kwargs)
    return decorated_function
