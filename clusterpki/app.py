"""
Flask signing service with optional mTLS, speaking the remote signing protocol.
"""
from flask import Flask, request, jsonify, g
import logging
import ssl
from typing import Optional
from datetime import datetime, timezone

from cryptography import x509

from .models.errors import (
    PKIError,
    InvalidSubjectError,
    UnknownRoleError,
    ProfileMismatchError,
    SigningUnavailableError,
)
from .models.pki import LocalSigning
from .security import SecurityService
from .security.auth_middleware import setup_mtls_authentication, require_authentication
from .services.ca_issuer import CAIssuer
from .services.logging_service import LoggingService
from .services.remote_signer import SIGN_PATH, HEALTH_PATH


ERROR_REASONS = {
    InvalidSubjectError: ('invalid_subject', 400),
    UnknownRoleError: ('unknown_role', 400),
    ProfileMismatchError: ('profile_mismatch', 400),
    SigningUnavailableError: ('signing_unavailable', 503),
}


def error_response(reason: str, message: str, status: int):
    return jsonify({
        'success': False,
        'result': None,
        'errors': [{'reason': reason, 'message': message}]
    }), status


class SigningServiceApp:
    """Flask application exposing the intermediate CA as a signing service."""

    def __init__(self, config, issuer: CAIssuer, logging_service: Optional[LoggingService] = None):
        """Initialize the signing service."""
        self.app = Flask(__name__)
        self.config = config
        self.issuer = issuer
        self.logging_service = logging_service
        self.security_service = SecurityService(config, issuer.store, issuer.bundle_builder)
        self.logger = logging.getLogger(__name__)

        self.security_service.load_certificates()
        setup_mtls_authentication(self.app, self.security_service, self.config)

        self._setup_routes()
        self._setup_error_handlers()
        self._setup_security_headers()

    def _setup_routes(self):
        """Set up API routes."""

        @self.app.route(HEALTH_PATH, methods=['GET'])
        def health_check():
            intermediate = self.issuer.load_intermediate()
            can_sign = (intermediate is not None and intermediate.can_sign
                        and intermediate.is_valid_at(datetime.now(timezone.utc)))
            health_status = {
                'status': 'healthy' if can_sign else 'degraded',
                'service': 'cluster-pki-signer',
                'label': self.config.signing_label,
                'mtls_enabled': self.config.enable_mtls,
                'intermediate_not_after': intermediate.not_after.isoformat() if intermediate else None,
                'timestamp': datetime.now(timezone.utc).isoformat()
            }
            if self.logging_service:
                health_status['logging'] = self.logging_service.get_health_status()
            return jsonify(health_status), 200 if can_sign else 503

        @self.app.route(SIGN_PATH, methods=['POST'])
        @require_authentication
        def sign():
            body = request.get_json(silent=True)
            if not isinstance(body, dict):
                return error_response('profile_mismatch', 'Request body must be a JSON object', 400)

            label = body.get('label')
            if label != self.config.signing_label:
                return error_response('unknown_label', f'Unknown signing label: {label!r}', 400)

            csr_pem = body.get('certificate_request')
            if not isinstance(csr_pem, str) or not csr_pem.strip():
                return error_response('profile_mismatch', 'certificate_request is required', 400)

            hosts = body.get('hosts')
            if hosts is not None and (not isinstance(hosts, list)
                                      or not all(isinstance(h, str) for h in hosts)):
                return error_response('invalid_subject', 'hosts must be a list of strings', 400)

            try:
                csr = x509.load_pem_x509_csr(csr_pem.encode('ascii'))
            except (ValueError, UnicodeEncodeError) as e:
                return error_response('profile_mismatch', f'Invalid certificate request: {e}', 400)

            try:
                profile = self.issuer.registry.profile_for(body.get('profile') or '')
                intermediate = self.issuer.load_intermediate()
                if intermediate is None:
                    raise SigningUnavailableError('Intermediate CA is not available on this signer',
                                                  role=profile.name, operation='remote_sign')
                leaf = self.issuer.sign(csr, profile, LocalSigning(intermediate), sans=hosts)
            except PKIError as e:
                return self._pki_error(e)

            self.logger.info(
                f"Signed {leaf.role} certificate for {leaf.subject} on behalf of "
                f"{getattr(g, 'client_id', 'anonymous')}"
            )
            return jsonify({
                'success': True,
                'result': {'certificate': leaf.certificate_pem.decode('ascii')},
                'errors': []
            })

        @self.app.route('/api/monitoring/metrics', methods=['GET'])
        @require_authentication
        def get_performance_metrics():
            if not self.logging_service:
                return jsonify({'error': 'Logging service not available'}), 503
            operation = request.args.get('operation')
            return jsonify({
                'metrics': self.logging_service.get_performance_stats(operation),
                'errors': self.logging_service.get_error_summary(),
                'timestamp': datetime.now(timezone.utc).isoformat()
            })

    def _pki_error(self, error: PKIError):
        reason, status = next(
            (value for cls, value in ERROR_REASONS.items() if isinstance(error, cls)),
            ('signing_unavailable', 500)
        )
        self.logger.warning(f"Sign request rejected: {error.describe()}")
        if self.logging_service:
            self.logging_service.track_error(error, 'remote_sign')
        return error_response(reason, error.message, status)

    def _setup_error_handlers(self):
        """Set up error handlers."""

        @self.app.errorhandler(404)
        def not_found(error):
            return error_response('not_found', 'The requested endpoint does not exist', 404)

        @self.app.errorhandler(405)
        def method_not_allowed(error):
            return error_response('method_not_allowed',
                                  'The requested method is not allowed for this endpoint', 405)

        @self.app.errorhandler(500)
        def internal_error(error):
            self.logger.error(f"Internal server error: {error}")
            return error_response('signing_unavailable', 'An unexpected error occurred', 500)

    def _setup_security_headers(self):
        """Set up security headers for all responses."""

        @self.app.after_request
        def add_security_headers(response):
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
            response.headers['X-Content-Type-Options'] = 'nosniff'
            response.headers['Cache-Control'] = 'no-store'
            response.headers.pop('Server', None)
            return response

    def create_ssl_context(self) -> ssl.SSLContext:
        """Create SSL context for HTTPS with mTLS."""
        return self.security_service.setup_mtls_context()

    def run(self, host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
        """Run the signing service, over HTTPS with mTLS when enabled."""
        host = host or self.config.server_host
        port = port or self.config.server_port

        if self.config.enable_mtls:
            ssl_context = self.create_ssl_context()
            self.logger.info(f"Starting signing service with mTLS on https://{host}:{port}")
            self.app.run(host=host, port=port, debug=debug, ssl_context=ssl_context)
        else:
            self.logger.warning("Running signing service without mTLS - this should only be used for development")
            self.app.run(host=host, port=port, debug=debug)

    def get_app(self) -> Flask:
        """Get the Flask application instance."""
        return self.app
