"""
Main orchestrator for LDAP SCIM Sync.

This module wires configuration, logging and the two directory clients
together and runs a single reconciliation: users first, then groups and
group memberships.
"""

import sys
import signal
import logging
import threading
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_scim_sync.config import load_config, load_source_credentials, ConfigurationError
from ldap_scim_sync.ldap_client import LDAPDirectory, LDAPConnectionError, LDAPQueryError
from ldap_scim_sync.logging_setup import setup_logging, audit_logger
from ldap_scim_sync.scim import SCIMDirectory, SCIMError
from ldap_scim_sync.sync import DirectorySync, SyncCancelled, LOOKUP_ERRORS_TREAT_AS_MISSING

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_SYNC_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_LDAP_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4
EXIT_CANCELLED = 130


def _check_cancelled(cancel_event: Optional[threading.Event]):
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelled("Sync cancelled")


def do_sync(config: Dict[str, Any], cancel_event: Optional[threading.Event] = None,
            stats: Optional[Dict[str, Any]] = None):
    """
    Run one full reconciliation from LDAP into SCIM.

    Cancellation is only honoured before the clients are created and between
    the user and group passes, never inside either pass.

    Args:
        config: Loaded configuration
        cancel_event: Optional event that cancels the run when set
        stats: Optional dictionary updated with the run's counters, even when
            the run fails part way

    Raises:
        SyncCancelled: If cancel_event was set at a checkpoint
        Exception: The first error raised by either directory, unchanged
    """
    _check_cancelled(cancel_event)

    logger.info("Creating the LDAP and SCIM clients needed")

    ldap_config = dict(config['ldap'])
    ldap_config['bind_password'] = load_source_credentials(config)
    ldap_config.setdefault('error_handling', config.get('error_handling', {}))

    source = LDAPDirectory(ldap_config)
    target = SCIMDirectory(config['scim'])

    lookup_errors = config.get('sync', {}).get('lookup_errors', LOOKUP_ERRORS_TREAT_AS_MISSING)
    syncer = DirectorySync(source, target, lookup_errors=lookup_errors)

    try:
        syncer.sync_users()
        _check_cancelled(cancel_event)
        syncer.sync_groups()
    finally:
        if stats is not None:
            stats.update(syncer.stats)
        source.close()
        target.close()


class SyncOrchestrator:
    """
    Runs a sync end to end and maps its outcome to a process exit code.

    Failures are never retried here; a failed run leaves the target partially
    converged and is expected to be re-run from scratch.
    """

    def __init__(self, config_path: Optional[str] = None, log_level: Optional[str] = None,
                 cancel_event: Optional[threading.Event] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            log_level: Overrides logging.level from the configuration
            cancel_event: Event that cancels the run when set
        """
        self.config = None
        self.config_path = config_path
        self.log_level = log_level
        self.cancel_event = cancel_event or threading.Event()

        self.sync_stats = {
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        self.sync_stats['start_time'] = datetime.now()

        try:
            self._load_configuration()
            self._setup_logging()

            logger.info("Starting LDAP SCIM Sync")
            do_sync(self.config, self.cancel_event, stats=self.sync_stats)

            self._finish()
            logger.info("Sync completed successfully")
            audit_logger.log_run('succeeded')
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            audit_logger.log_run('failed', str(e))
            return EXIT_LDAP_CONNECTION_ERROR
        except SyncCancelled:
            self._finish()
            logger.warning("Sync cancelled before completion")
            audit_logger.log_run('cancelled')
            return EXIT_CANCELLED
        except (LDAPQueryError, SCIMError) as e:
            self._finish()
            logger.error(f"Sync failed: {e}")
            audit_logger.log_run('failed', str(e))
            return EXIT_SYNC_FAILED
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            audit_logger.log_run('failed', str(e))
            return EXIT_UNEXPECTED_ERROR

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path)
        if self.log_level:
            self.config['logging']['level'] = self.log_level
        logger.debug("Configuration loaded successfully")

    def _setup_logging(self):
        """Configure logging based on configuration."""
        setup_logging(self.config.get('logging', {}))

    def _finish(self):
        """Record timings and log the run summary."""
        self.sync_stats['end_time'] = datetime.now()
        self.sync_stats['runtime_seconds'] = (
            self.sync_stats['end_time'] - self.sync_stats['start_time']
        ).total_seconds()
        self._log_sync_summary()

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Users created: {stats.get('users_created', 0)}")
        logger.info(f"Users deleted: {stats.get('users_deleted', 0)}")
        logger.info(f"Users correlated: {stats.get('users_correlated', 0)}")
        logger.info(f"User lookup errors: {stats.get('lookup_errors', 0)}")
        logger.info(f"Groups created: {stats.get('groups_created', 0)}")
        logger.info(f"Groups deleted: {stats.get('groups_deleted', 0)}")
        logger.info(f"Memberships added: {stats.get('memberships_added', 0)}")
        logger.info(f"Memberships removed: {stats.get('memberships_removed', 0)}")
        logger.info(f"Membership checks: {stats.get('membership_checks', 0)}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            ldap_config = dict(self.config['ldap'])
            ldap_config['bind_password'] = load_source_credentials(self.config)
            directory = LDAPDirectory(ldap_config)
            directory.connect(max_retries=1, retry_wait=0)
            directory.disconnect()

            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection successful'
            }
        except (ConfigurationError, LDAPConnectionError) as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            with SCIMDirectory(self.config['scim']) as scim:
                scim.service_provider_config()

            health_status['checks']['scim'] = {
                'status': 'pass',
                'message': 'SCIM endpoint reachable'
            }
        except SCIMError as e:
            health_status['checks']['scim'] = {
                'status': 'fail',
                'message': f'SCIM request failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status


def install_signal_handlers(cancel_event: threading.Event):
    """Cancel the run at its next checkpoint on SIGINT or SIGTERM."""
    def handler(signum, frame):
        logger.warning(f"Received signal {signum}, cancelling after the current step")
        cancel_event.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Sync LDAP users and groups to a SCIM directory')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                       help='Perform health check instead of sync')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                       help='Override the configured log level')

    args = parser.parse_args()

    cancel_event = threading.Event()
    orchestrator = SyncOrchestrator(config_path=args.config, log_level=args.log_level,
                                    cancel_event=cancel_event)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    install_signal_handlers(cancel_event)
    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
