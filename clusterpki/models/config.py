"""
Configuration data models for the cluster PKI.
"""
from dataclasses import dataclass
from typing import Optional


@dataclass
class Config:
    """Main configuration class containing all PKI settings."""

    # PKI settings
    pki_dir: str = "pki"
    organization: str = "etcd"
    root_common_name: str = "etcd Root CA"
    intermediate_common_name: str = "etcd Intermediate CA"
    key_algorithm: str = "rsa"
    key_size: int = 2048
    ec_curve: str = "P-256"

    # Cluster settings
    cluster_name: str = "etcd"
    cluster_members: str = ""
    ca_host: Optional[str] = None

    # Signing settings
    signing_mode: str = "auto"
    remote_endpoint: Optional[str] = None
    signing_label: str = "etcd-intermediate-ca"
    remote_ca_bundle_path: Optional[str] = None
    remote_client_cert_path: Optional[str] = None
    remote_client_key_path: Optional[str] = None
    request_timeout_seconds: int = 10
    max_retry_attempts: int = 0

    # Renewal settings
    renew_threshold_days: int = 30
    renewal_check_time: str = "03:00"

    # Signing service settings
    server_host: str = "0.0.0.0"
    server_port: int = 8888
    enable_mtls: bool = False
    client_cert_required: bool = True
    trust_proxy_headers: bool = False

    # Application settings
    log_level: str = "INFO"
    log_file_path: str = "logs/cluster_pki.log"

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate_types()

    def _validate_types(self):
        """Ensure all configuration values have correct types."""
        if self.key_algorithm not in ["rsa", "ecdsa"]:
            raise ValueError("key_algorithm must be one of: rsa, ecdsa")

        if not isinstance(self.key_size, int) or self.key_size < 2048:
            raise ValueError("key_size must be an integer of at least 2048")

        if self.ec_curve not in ["P-256", "P-384"]:
            raise ValueError("ec_curve must be one of: P-256, P-384")

        if self.signing_mode not in ["auto", "local", "remote"]:
            raise ValueError("signing_mode must be one of: auto, local, remote")

        if not isinstance(self.request_timeout_seconds, int) or self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be a positive integer")

        if not isinstance(self.max_retry_attempts, int) or self.max_retry_attempts < 0:
            raise ValueError("max_retry_attempts must be a non-negative integer")

        if not isinstance(self.renew_threshold_days, int) or self.renew_threshold_days <= 0:
            raise ValueError("renew_threshold_days must be a positive integer")

        if not isinstance(self.server_port, int) or not (1 <= self.server_port <= 65535):
            raise ValueError("server_port must be an integer between 1 and 65535")

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ValueError("log_level must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL")


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    field: str
    message: str
    severity: str = "error"  # error, warning

    def __str__(self):
        return f"{self.severity.upper()}: {self.field} - {self.message}"


@dataclass
class ConfigValidationResult:
    """Result of configuration validation."""
    is_valid: bool
    errors: list[ConfigValidationError]
    warnings: list[ConfigValidationError]

    def __post_init__(self):
        """Separate errors and warnings."""
        all_issues = self.errors + self.warnings
        self.errors = [e for e in all_issues if e.severity == "error"]
        self.warnings = [e for e in all_issues if e.severity == "warning"]

    def has_errors(self) -> bool:
        """Check if there are any validation errors."""
        return len(self.errors) > 0

    def has_warnings(self) -> bool:
        """Check if there are any validation warnings."""
        return len(self.warnings) > 0

    def get_error_summary(self) -> str:
        """Get a formatted summary of all errors and warnings."""
        lines = []

        if self.errors:
            lines.append("Configuration Errors:")
            for error in self.errors:
                lines.append(f"  - {error}")

        if self.warnings:
            lines.append("Configuration Warnings:")
            for warning in self.warnings:
                lines.append(f"  - {warning}")

        return "\n".join(lines) if lines else "Configuration is valid"
