"""
Command line entry point for the cluster PKI.
Wires configuration, logging and the PKI services together and dispatches commands.
"""

import os
import sys
import signal
import logging
import argparse
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional

from .models.config import Config
from .models.errors import PKIError, SigningUnavailableError
from .models.pki import ClusterMember, ClusterTopology, SigningAvailability, SigningMode
from .services.config_service import ConfigService
from .services.logging_service import LoggingService
from .services.material_store import MaterialStore
from .services.remote_signer import RemoteSigningClient
from .services.ca_issuer import CAIssuer
from .services.expiry_auditor import ExpiryAuditor, ExpiryAudit
from .services.renewal_service import RenewalService, RenewalScheduler, RenewalReport
from .services.distribution_service import DirectoryTransfer, TrustDistributionService, BootstrapReport


class ClusterPKIApplication:
    """Owns the configured services and implements each CLI command."""

    def __init__(self, config_path: Optional[str] = None, config: Optional[Config] = None,
                 pki_dir: Optional[str] = None, console_logging: bool = True):
        """
        Initialize the application.

        Args:
            config_path: Path to configuration file (optional)
            config: Ready configuration, bypassing the file (optional)
            pki_dir: Override of the configured PKI directory (optional)
            console_logging: Also log to stderr
        """
        self.config_path = config_path or self._get_default_config_path()
        self.config_service = ConfigService()
        if config is not None:
            self.config = self.config_service.use_config(config)
        elif os.path.exists(self.config_path):
            self.config = self.config_service.load_config(self.config_path)
        elif config_path:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        else:
            self.config = self.config_service.use_config(Config())
        if pki_dir:
            self.config = self.config_service.use_config(replace(self.config, pki_dir=pki_dir))

        self.logging_service = LoggingService(self.config, console=console_logging)
        self.logger = logging.getLogger(__name__)

        self.topology: ClusterTopology = self.config_service.get_topology(self.config)
        self.store = MaterialStore(self.config.pki_dir)
        self.remote_client = RemoteSigningClient.from_config(self.config)
        self.issuer = CAIssuer.from_config(self.config, self.store, self.remote_client, self.logging_service)
        self.auditor = ExpiryAuditor(self.store, self.config.renew_threshold_days)
        self.renewal_service = RenewalService(self.issuer, self.topology)
        self._availability: Optional[SigningAvailability] = None
        self._shutdown_event = threading.Event()

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        possible_paths = [
            "config/cluster-pki.properties",
            "cluster-pki.properties",
            os.path.expanduser("~/.cluster_pki/config.properties"),
            "/etc/cluster_pki/config.properties"
        ]

        for path in possible_paths:
            if os.path.exists(path):
                return path

        return possible_paths[0]

    # Signing availability

    def signing_availability(self) -> SigningAvailability:
        """Resolve which signing paths are usable, once per process."""
        if self._availability is not None:
            return self._availability

        reasons = []
        intermediate = None
        try:
            intermediate = self.issuer.load_intermediate()
        except PKIError as e:
            reasons.append(e.describe())
        if intermediate is None and not reasons:
            reasons.append("no intermediate CA in the local store")
        elif intermediate is not None and not intermediate.can_sign:
            reasons.append("intermediate CA private key is not present locally")

        endpoint = self.config.remote_endpoint
        reachable = False
        if endpoint and self.config.signing_mode != "local":
            reachable = self.remote_client.is_available(endpoint)
            if not reachable:
                reasons.append(f"remote signer {endpoint} is not reachable")
        elif not endpoint:
            reasons.append("no remote signing endpoint configured")

        self._availability = SigningAvailability(
            intermediate=intermediate,
            remote_endpoint=endpoint,
            remote_label=self.config.signing_label,
            remote_reachable=reachable,
            reasons=reasons,
        )
        return self._availability

    def signing_mode(self, preference: Optional[str] = None) -> SigningMode:
        mode = self.signing_availability().select(preference or self.config.signing_mode)
        self.logger.info(f"Using {type(mode).__name__} for signing")
        return mode

    # Commands

    def create_root(self, force: bool = False, override: bool = False):
        return self.issuer.init_root(force=force, override=override)

    def create_intermediate(self, force: bool = False, override: bool = False):
        root = self.issuer.load_root()
        if root is None:
            raise SigningUnavailableError("Root CA does not exist; run create-root first",
                                          role="intermediate", operation="init_intermediate")
        intermediate = self.issuer.init_intermediate(root, force=force, override=override)
        self._availability = None
        return intermediate

    def create_ca_server(self, hosts: Optional[List[str]] = None, overwrite: bool = False):
        hosts = hosts or ([self.config.ca_host] if self.config.ca_host else [])
        return self.issuer.issue_ca_server(hosts, overwrite=overwrite)

    def issue(self, subject: str, role: str, sans: List[str], mode: Optional[str] = None,
              overwrite: bool = False):
        self.issuer.registry.profile_for(role)
        return self.issuer.issue(subject, sans, role, self.signing_mode(mode), overwrite=overwrite)

    def issue_member(self, name: str, host: str, mode: Optional[str] = None, overwrite: bool = False):
        return self.issuer.issue_member(ClusterMember(name=name, host=host), self.signing_mode(mode),
                                        overwrite=overwrite)

    def issue_cluster(self, clients: Optional[List[str]] = None, mode: Optional[str] = None,
                      overwrite: bool = False):
        """Issue member certificates for the configured topology and the given clients."""
        if not len(self.topology) and not clients:
            self.logger.warning("No cluster members configured and no clients requested")
        signing_mode = self.signing_mode(mode)
        issued = []
        for member in self.topology:
            issued.extend(self.issuer.issue_member(member, signing_mode, overwrite=overwrite))
        for client in clients or []:
            issued.append(self.issuer.issue_client(client, signing_mode, overwrite=overwrite))
        return issued

    def audit(self, now: Optional[datetime] = None, threshold_days: Optional[int] = None,
              subject: Optional[str] = None) -> ExpiryAudit:
        return self.auditor.run(now=now, threshold_days=threshold_days, subject=subject)

    def renew(self, subject: str, mode: Optional[str] = None):
        return self.renewal_service.renew(subject, self.signing_mode(mode))

    def renew_due(self, now: Optional[datetime] = None, mode: Optional[str] = None) -> RenewalReport:
        due = self.audit(now=now).needing_renewal()
        if not due:
            return RenewalReport()
        return self.renewal_service.renew_due(due, self.signing_mode(mode))

    def bootstrap(self, source: str, overwrite: bool = False) -> BootstrapReport:
        report = TrustDistributionService(self.store).bootstrap(DirectoryTransfer(), source, overwrite=overwrite)
        self._availability = None
        return report

    def serve(self, host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
        from .app import SigningServiceApp

        SigningServiceApp(self.config, self.issuer, self.logging_service).run(host=host, port=port, debug=debug)

    def watch(self, once: bool = False) -> Optional[RenewalReport]:
        """Run the renewal scheduler until a shutdown signal arrives."""
        scheduler = RenewalScheduler(
            self.auditor,
            self.renewal_service,
            lambda: self.signing_mode(),
            threshold_days=self.config.renew_threshold_days,
        )
        if once:
            return scheduler.run_once()

        self._setup_signal_handlers()
        scheduler.start(self.config.renewal_check_time)
        try:
            self._shutdown_event.wait()
        finally:
            scheduler.stop()
        return scheduler.last_report

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            self.logger.info(f"Received {signal.Signals(signum).name} signal, shutting down...")
            self._shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)


def _print_leaf(leaf) -> None:
    state = "issued" if leaf.created else "kept"
    print(f"{state} {leaf.role} certificate for {leaf.subject} at {leaf.location} "
          f"(serial {leaf.serial_number:x}, expires {leaf.not_after.isoformat()})")


def _print_ca(ca) -> None:
    state = "created" if ca.created else "kept"
    print(f"{state} {ca.role} CA {ca.subject.rfc4514_string()} "
          f"(serial {ca.serial_number:x}, expires {ca.not_after.isoformat()})")


def _parse_now(value: str) -> datetime:
    try:
        now = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid ISO timestamp: {value}")
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='cluster-pki', description='Certificate lifecycle for cluster mTLS')
    parser.add_argument('--config', '-c', help='Configuration file path')
    parser.add_argument('--pki-dir', help='Override the PKI directory from configuration')
    parser.add_argument('--quiet', '-q', action='store_true', help='Do not log to the console')

    commands = parser.add_subparsers(dest='command', required=True)

    for name, help_text in (('create-root', 'Create the root CA'),
                            ('create-intermediate', 'Create the intermediate CA')):
        command = commands.add_parser(name, help=help_text)
        command.add_argument('--force', action='store_true', help='Request creation even if a valid CA exists')
        command.add_argument('--override', action='store_true', help='Confirm replacing a still-valid CA')

    command = commands.add_parser('create-ca-server', help="Issue the signing service's TLS certificate")
    command.add_argument('--host', action='append', default=[], help='Additional SAN (repeatable)')
    command.add_argument('--overwrite', action='store_true')

    mode_choices = ['auto', 'local', 'remote']

    command = commands.add_parser('issue', help='Issue a certificate for one subject and role')
    command.add_argument('subject')
    command.add_argument('--role', required=True)
    command.add_argument('--san', action='append', default=[], help='Subject alternative name (repeatable)')
    command.add_argument('--mode', choices=mode_choices)
    command.add_argument('--overwrite', action='store_true')

    command = commands.add_parser('issue-member', help='Issue server and peer certificates for a member')
    command.add_argument('name')
    command.add_argument('host')
    command.add_argument('--mode', choices=mode_choices)
    command.add_argument('--overwrite', action='store_true')

    command = commands.add_parser('issue-cluster', help='Issue certificates for every configured member')
    command.add_argument('--client', action='append', default=[], help='Client certificate to issue (repeatable)')
    command.add_argument('--mode', choices=mode_choices)
    command.add_argument('--overwrite', action='store_true')

    command = commands.add_parser('audit', help='Report certificate expiry')
    command.add_argument('--threshold-days', type=int)
    command.add_argument('--now', type=_parse_now, help='Evaluate at this ISO timestamp')
    command.add_argument('--subject')

    command = commands.add_parser('renew', help='Renew every certificate of a subject')
    command.add_argument('subject')
    command.add_argument('--mode', choices=mode_choices)

    command = commands.add_parser('renew-due', help='Renew every certificate that must be renewed')
    command.add_argument('--now', type=_parse_now)
    command.add_argument('--mode', choices=mode_choices)

    command = commands.add_parser('bootstrap', help='Install CA material from a directory')
    command.add_argument('source')
    command.add_argument('--overwrite', action='store_true')

    command = commands.add_parser('serve', help='Run the signing service')
    command.add_argument('--host')
    command.add_argument('--port', type=int)
    command.add_argument('--debug', action='store_true')

    command = commands.add_parser('watch', help='Run the daily renewal scheduler')
    command.add_argument('--once', action='store_true', help='Run one audit-and-renew pass and exit')

    command = commands.add_parser('init-config', help='Write a default configuration file')
    command.add_argument('path')

    return parser


def run_command(app: ClusterPKIApplication, args) -> int:
    if args.command == 'create-root':
        _print_ca(app.create_root(force=args.force, override=args.override))
    elif args.command == 'create-intermediate':
        _print_ca(app.create_intermediate(force=args.force, override=args.override))
    elif args.command == 'create-ca-server':
        _print_leaf(app.create_ca_server(args.host, overwrite=args.overwrite))
    elif args.command == 'issue':
        _print_leaf(app.issue(args.subject, args.role, args.san, mode=args.mode, overwrite=args.overwrite))
    elif args.command == 'issue-member':
        for leaf in app.issue_member(args.name, args.host, mode=args.mode, overwrite=args.overwrite):
            _print_leaf(leaf)
    elif args.command == 'issue-cluster':
        for leaf in app.issue_cluster(args.client, mode=args.mode, overwrite=args.overwrite):
            _print_leaf(leaf)
    elif args.command == 'audit':
        result = app.audit(now=args.now, threshold_days=args.threshold_days, subject=args.subject)
        for decision in result:
            days = decision.remaining_days if decision.ok else "?"
            detail = f" ({decision.error})" if decision.error else ""
            print(f"{decision.action.value:<10} {decision.subject} {decision.role or '-'} {days}{detail}")
        summary = result.summary()
        print(f"{summary['ok']} ok, {summary['warn']} warn, {summary['must_renew']} must_renew")
    elif args.command == 'renew':
        for leaf in app.renew(args.subject, mode=args.mode):
            _print_leaf(leaf)
    elif args.command == 'renew-due':
        report = app.renew_due(now=args.now, mode=args.mode)
        for leaf in report.renewed:
            _print_leaf(leaf)
        for decision in report.ca_rotation_needed:
            print(f"{decision.subject} must be rotated manually")
        for subject, error in report.failed:
            print(error.describe(), file=sys.stderr)
        return 0 if report.success else 1
    elif args.command == 'bootstrap':
        report = app.bootstrap(args.source, overwrite=args.overwrite)
        print(f"bootstrapped {len(report.written)} artifacts, kept {len(report.kept)}")
        for kind, name in report.missing_optional:
            print(f"optional {kind} '{name}' not available")
    elif args.command == 'serve':
        app.serve(host=args.host, port=args.port, debug=args.debug)
    elif args.command == 'watch':
        report = app.watch(once=args.once)
        if report is not None:
            print(f"renewed {len(report.renewed)} certificates, {len(report.failed)} failures")
            return 0 if report.success else 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the command line."""
    args = build_parser().parse_args(argv)

    if args.command == 'init-config':
        ConfigService().create_default_config_file(args.path)
        print(f"Wrote default configuration to {args.path}")
        return 0

    try:
        app = ClusterPKIApplication(config_path=args.config, pki_dir=args.pki_dir,
                                    console_logging=not args.quiet)
    except (FileNotFoundError, ValueError, PKIError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        return run_command(app, args)
    except PKIError as e:
        app.logging_service.track_error(e, e.operation)
        app.logger.error(e.describe())
        print(e.describe(), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        return 130


if __name__ == '__main__':
    sys.exit(main())
