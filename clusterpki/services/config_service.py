"""
Configuration service for loading and validating PKI settings.
"""
import os
import time
import configparser
from typing import Optional, Dict, Any
import logging

from ..models.config import Config, ConfigValidationError, ConfigValidationResult
from ..models.errors import InvalidSubjectError
from ..models.pki import ClusterTopology


class ConfigService:
    """Service for loading and validating application configuration."""

    def __init__(self, config_path: Optional[str] = None):
        self.logger = logging.getLogger(__name__)
        self._config = None
        if config_path:
            self._config = self.load_config(config_path)

    def get_config(self) -> Config:
        """
        Get the loaded configuration.

        Returns:
            Config object

        Raises:
            ValueError: If no configuration has been loaded
        """
        if self._config is None:
            raise ValueError("No configuration loaded. Call load_config() first.")
        return self._config

    def use_config(self, config: Config) -> Config:
        """Install an already-built configuration (defaults, tests)."""
        validation_result = self.validate_config(config)
        if validation_result.has_errors():
            raise ValueError(f"Configuration validation failed:\n{validation_result.get_error_summary()}")
        self._config = config
        return config

    def load_config(self, config_path: str) -> Config:
        """
        Load configuration from a property file.

        Args:
            config_path: Path to the configuration file

        Returns:
            Config object with loaded settings

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid or has validation errors
        """
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        config_data = self._load_config_file(config_path)
        config = self._create_config_from_data(config_data)

        validation_result = self.validate_config(config)

        if validation_result.has_errors():
            error_summary = validation_result.get_error_summary()
            raise ValueError(f"Configuration validation failed:\n{error_summary}")

        if validation_result.has_warnings():
            warning_summary = validation_result.get_error_summary()
            self.logger.warning(f"Configuration warnings:\n{warning_summary}")

        self._config = config
        return config

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        """Load configuration data from file."""
        config_parser = configparser.ConfigParser()

        try:
            config_parser.read(config_path)
        except configparser.Error as e:
            raise ValueError(f"Failed to parse configuration file: {e}")

        # Flatten to section.key
        config_data = {}
        for section in config_parser.sections():
            for key, value in config_parser.items(section):
                config_key = f"{section}.{key}" if section != "DEFAULT" else key
                config_data[config_key] = value

        if config_parser.defaults():
            for key, value in config_parser.defaults().items():
                if key not in config_data:
                    config_data[key] = value

        return config_data

    def _create_config_from_data(self, config_data: Dict[str, Any]) -> Config:
        """Create Config object from configuration data."""
        config_mapping = {
            # PKI settings
            "pki.dir": ("pki_dir", str),
            "pki_dir": ("pki_dir", str),
            "pki.organization": ("organization", str),
            "organization": ("organization", str),
            "pki.root_common_name": ("root_common_name", str),
            "pki.intermediate_common_name": ("intermediate_common_name", str),
            "pki.key_algorithm": ("key_algorithm", str),
            "key_algorithm": ("key_algorithm", str),
            "pki.key_size": ("key_size", int),
            "key_size": ("key_size", int),
            "pki.ec_curve": ("ec_curve", str),
            "ec_curve": ("ec_curve", str),

            # Cluster settings
            "cluster.name": ("cluster_name", str),
            "cluster_name": ("cluster_name", str),
            "cluster.members": ("cluster_members", str),
            "cluster_members": ("cluster_members", str),
            "cluster.ca_host": ("ca_host", str),
            "ca_host": ("ca_host", str),

            # Signing settings
            "signing.mode": ("signing_mode", str),
            "signing_mode": ("signing_mode", str),
            "signing.remote_endpoint": ("remote_endpoint", str),
            "remote_endpoint": ("remote_endpoint", str),
            "signing.label": ("signing_label", str),
            "signing_label": ("signing_label", str),
            "signing.ca_bundle_path": ("remote_ca_bundle_path", str),
            "signing.client_cert_path": ("remote_client_cert_path", str),
            "signing.client_key_path": ("remote_client_key_path", str),
            "signing.request_timeout_seconds": ("request_timeout_seconds", int),
            "request_timeout_seconds": ("request_timeout_seconds", int),
            "signing.max_retry_attempts": ("max_retry_attempts", int),
            "max_retry_attempts": ("max_retry_attempts", int),

            # Renewal settings
            "renewal.threshold_days": ("renew_threshold_days", int),
            "renew_threshold_days": ("renew_threshold_days", int),
            "renewal.check_time": ("renewal_check_time", str),

            # Signing service settings
            "server.host": ("server_host", str),
            "server.port": ("server_port", int),
            "server.enable_mtls": ("enable_mtls", bool),
            "enable_mtls": ("enable_mtls", bool),
            "server.client_cert_required": ("client_cert_required", bool),
            "server.trust_proxy_headers": ("trust_proxy_headers", bool),

            # Application settings
            "app.log_level": ("log_level", str),
            "log_level": ("log_level", str),
            "app.log_file_path": ("log_file_path", str),
            "log_file_path": ("log_file_path", str),
        }

        optional_fields = {"ca_host", "remote_endpoint", "remote_ca_bundle_path",
                           "remote_client_cert_path", "remote_client_key_path"}

        config_kwargs = {}

        for config_key, raw_value in config_data.items():
            if config_key in config_mapping:
                field_name, field_type = config_mapping[config_key]
                try:
                    if field_type == bool:
                        value = self._parse_bool(raw_value)
                    elif field_type == int:
                        value = int(raw_value)
                    elif field_name in optional_fields:
                        value = str(raw_value).strip() or None
                    else:
                        value = str(raw_value) if raw_value is not None else None

                    config_kwargs[field_name] = value
                except (ValueError, TypeError) as e:
                    raise ValueError(f"Invalid value for {config_key}: {raw_value} ({e})")

        return Config(**config_kwargs)

    def _parse_bool(self, value: Any) -> bool:
        """Parse boolean value from string."""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "yes", "1", "on", "enabled")
        return bool(value)

    def get_topology(self, config: Optional[Config] = None) -> ClusterTopology:
        """Build the cluster topology from configuration."""
        config = config or self.get_config()
        return ClusterTopology.parse(config.cluster_members)

    def validate_config(self, config: Config) -> ConfigValidationResult:
        """
        Validate configuration settings.

        Args:
            config: Configuration object to validate

        Returns:
            ConfigValidationResult with validation results
        """
        errors = []
        warnings = []

        if not config.pki_dir:
            errors.append(ConfigValidationError(
                "pki_dir",
                "PKI directory is required"
            ))
        else:
            parent = os.path.dirname(os.path.abspath(config.pki_dir))
            if parent and not os.path.exists(parent):
                warnings.append(ConfigValidationError(
                    "pki_dir",
                    f"Parent directory of PKI directory does not exist: {parent}",
                    "warning"
                ))

        if not config.organization.strip():
            errors.append(ConfigValidationError(
                "organization",
                "Organization is required for certificate subjects"
            ))

        try:
            ClusterTopology.parse(config.cluster_members)
        except InvalidSubjectError as e:
            errors.append(ConfigValidationError("cluster_members", str(e)))

        if config.signing_mode == "remote" and not config.remote_endpoint:
            errors.append(ConfigValidationError(
                "remote_endpoint",
                "Remote endpoint is required when signing mode is remote"
            ))

        if config.remote_endpoint:
            if not config.remote_endpoint.startswith(("http://", "https://")):
                errors.append(ConfigValidationError(
                    "remote_endpoint",
                    "Remote endpoint must be an http:// or https:// URL"
                ))
            elif config.remote_endpoint.startswith("http://"):
                warnings.append(ConfigValidationError(
                    "remote_endpoint",
                    "Remote signing over plain HTTP does not authenticate the CA",
                    "warning"
                ))

        if config.remote_ca_bundle_path and not os.path.exists(config.remote_ca_bundle_path):
            warnings.append(ConfigValidationError(
                "remote_ca_bundle_path",
                f"CA bundle for remote signing not found: {config.remote_ca_bundle_path}",
                "warning"
            ))

        if bool(config.remote_client_cert_path) != bool(config.remote_client_key_path):
            errors.append(ConfigValidationError(
                "remote_client_cert_path",
                "Client certificate and key must be configured together"
            ))

        try:
            time.strptime(config.renewal_check_time, "%H:%M")
        except ValueError:
            errors.append(ConfigValidationError(
                "renewal_check_time",
                f"Invalid time format: {config.renewal_check_time}. Use HH:MM format."
            ))

        if config.renew_threshold_days >= 183:
            warnings.append(ConfigValidationError(
                "renew_threshold_days",
                "Renewal threshold over half the leaf validity renews certificates constantly",
                "warning"
            ))

        if config.request_timeout_seconds > 120:
            warnings.append(ConfigValidationError(
                "request_timeout_seconds",
                "Signing timeout over 2 minutes may stall callers",
                "warning"
            ))

        if config.log_file_path:
            log_dir = os.path.dirname(config.log_file_path)
            if log_dir and not os.path.exists(log_dir):
                warnings.append(ConfigValidationError(
                    "log_file_path",
                    f"Log directory does not exist: {log_dir}",
                    "warning"
                ))

        all_issues = errors + warnings
        return ConfigValidationResult(
            is_valid=len(errors) == 0,
            errors=all_issues,
            warnings=[]
        )

    def create_default_config_file(self, config_path: str) -> None:
        """
        Create a default configuration file with example settings.

        Args:
            config_path: Path where to create the config file
        """
        config_content = """# Cluster PKI Configuration File

[pki]
dir = pki
organization = etcd
root_common_name = etcd Root CA
intermediate_common_name = etcd Intermediate CA
key_algorithm = rsa
key_size = 2048
ec_curve = P-256

[cluster]
name = etcd
members = etcd-1=10.0.0.1,etcd-2=10.0.0.2,etcd-3=10.0.0.3
ca_host = 10.0.0.1

[signing]
mode = auto
remote_endpoint =
label = etcd-intermediate-ca
ca_bundle_path =
client_cert_path =
client_key_path =
request_timeout_seconds = 10
max_retry_attempts = 0

[renewal]
threshold_days = 30
check_time = 03:00

[server]
host = 0.0.0.0
port = 8888
enable_mtls = false
client_cert_required = true
trust_proxy_headers = false

[app]
log_level = INFO
log_file_path = logs/cluster_pki.log
"""

        config_dir = os.path.dirname(config_path)
        if config_dir:
            os.makedirs(config_dir, exist_ok=True)

        with open(config_path, 'w') as f:
            f.write(config_content)

        self.logger.info(f"Created default configuration file: {config_path}")
