# Certificate renewal service

# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.

# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
This module is the main source code behind the certificate renewer.
It decides which certificate profiles are due for renewal, drives the ACME issuance
and stores the resulting PKCS#12 bundles in the configured secret store.
"""
import argparse
import concurrent.futures
import datetime
import logging
import logging.config
import signal
import sys
import threading
from enum import Enum

from acme_renewer.acme_requests import ACMEIssuer
from acme_renewer.challenges import CHALLENGE_HANDLERS
from acme_renewer.config import ConfigError, RenewerConfig
from acme_renewer.dns_publisher import build_publisher
from acme_renewer.key_cache import AccountKeyCache, FileKeyCacheStorage, SecretStoreKeyCacheStorage
from acme_renewer.secret_store import SECRET_STORES

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

PATHS = {
    'config': '/etc/acme-renewer/config.yaml',
}

LOGGING_CONFIG = {
    'disable_existing_loggers': False,
    'version': 1,
    'formatters': {
        'default': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',  # logging handler that outputs log messages to terminal
            'level': 'INFO',                   # message level to be written to console
            'formatter': 'default',
        },
    },
    'loggers': {
        'acme_renewer': {
            'handlers': ['console'],
            'level': 'INFO',
        },
    }
}


class RenewalError(Exception):
    """Base error class"""


class InvalidArgumentError(RenewalError):
    """The request is missing a valid certificate name"""


class ProfileNotFoundError(RenewalError):
    """There is no certificate profile with the requested name"""


class CertificateUnavailableError(RenewalError):
    """The secret store doesn't hold the requested certificate"""


class PostUploadVerificationError(RenewalError):
    """The certificate has been imported but the secret store doesn't return it"""


class RenewalCancelledError(RenewalError):
    """The renewal has been cancelled before the new certificate got imported"""


class RenewalStatus(Enum):
    """Outcome of the renewal of one certificate profile"""
    RENEWED = 'renewed'
    SKIPPED = 'skipped'
    FAILED = 'failed'


class RenewalResult:
    """Result of the renewal of one certificate profile during a sweep"""
    def __init__(self, name, status, record=None, error=None):
        self.name = name
        self.status = status
        self.record = record
        self.error = error

    def __repr__(self):
        return 'RenewalResult(name={!r}, status={}, error={!r})'.format(self.name, self.status.value, self.error)


class CertificateRenewer:
    """Renews the certificates described by the configured certificate profiles"""
    def __init__(self, config, secret_store, issuer):
        self.config = config
        self.secret_store = secret_store
        self.issuer = issuer

    def get_profile(self, name):
        """Returns the CertificateProfile called name"""
        if name is None or not str(name).strip():
            raise InvalidArgumentError('Certificate name must not be empty')

        try:
            return self.config.certificates[name]
        except KeyError:
            raise ProfileNotFoundError('Certificate {} not found'.format(name))

    def get_certificate(self, name):
        """Returns the CertificateRecord currently stored for the certificate profile called name"""
        profile = self.get_profile(name)
        record = self.secret_store.get_certificate(profile.kv_cert_name, profile.vault_uri)
        if record is None:
            raise CertificateUnavailableError('Certificate {} is not available on {}'.format(profile.kv_cert_name,
                                                                                          profile.vault_uri))
        return record

    @staticmethod
    def is_expiring_within(record, buffer, now=None):
        """Returns True if record expires within buffer (a datetime.timedelta) from now"""
        if now is None:
            now = datetime.datetime.now(datetime.timezone.utc)
        return record.expires - now <= buffer

    def renew(self, name, force=False, deadline=None, cancel_event=None):
        """
        Renews the certificate profile called name.
        Returns the new CertificateRecord or None if the current certificate isn't due for renewal
        """
        profile = self.get_profile(name)

        if not force:
            record = self.secret_store.get_certificate(profile.kv_cert_name, profile.vault_uri)
            if record is not None and not self.is_expiring_within(record, self.config.renewal_threshold):
                logger.info("Certificate %s expires on %s, skipping renewal", name, record.expires.isoformat())
                return None

        logger.info("Requesting a new certificate for %s: %s", name, ', '.join(profile.domains))
        pfx = self.issuer.request_certificate(profile, deadline=deadline, cancel_event=cancel_event)
        # the sweep already reported this renewal as failed
        if cancel_event is not None and cancel_event.is_set():
            logger.warning("Renewal of %s has been cancelled, discarding the issued certificate", name)
            raise RenewalCancelledError('Renewal of {} has been cancelled'.format(name))

        self.secret_store.import_certificate(profile.kv_cert_name, profile.vault_uri, pfx, profile.pfx_password)

        record = self.secret_store.get_certificate(profile.kv_cert_name, profile.vault_uri)
        if record is None:
            raise PostUploadVerificationError('Certificate {} is missing after being imported on {}'.format(
                profile.kv_cert_name, profile.vault_uri))

        logger.info("Certificate %s renewed, expires: %s, thumbprint: %s", name, record.expires.isoformat(),
                    record.thumbprint)
        return record

    def _renew_profile(self, name, deadline, cancel_event):
        try:
            record = self.renew(name, deadline=deadline, cancel_event=cancel_event)
        except Exception as renewal_error:  # pylint: disable=broad-except
            logger.exception("Unable to renew certificate %s", name)
            return RenewalResult(name, RenewalStatus.FAILED, error=str(renewal_error))

        if record is None:
            return RenewalResult(name, RenewalStatus.SKIPPED)
        return RenewalResult(name, RenewalStatus.RENEWED, record=record)

    def renew_all_due(self, deadline=None):
        """
        Renews every certificate profile with auto_renew enabled that is due for renewal.
        Returns a dict mapping profile names to RenewalResult instances
        """
        if deadline is None:
            deadline = datetime.datetime.now(datetime.timezone.utc) + self.config.sweep['deadline']

        names = [name for name, profile in self.config.certificates.items() if profile.auto_renew]
        logger.info("Starting renewal sweep of %d certificates, deadline: %s", len(names), deadline.isoformat())

        cancel_event = threading.Event()
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=self.config.sweep['max_workers'])
        futures = {executor.submit(self._renew_profile, name, deadline, cancel_event): name for name in names}
        timeout = max(0.0, (deadline - datetime.datetime.now(datetime.timezone.utc)).total_seconds())
        done, not_done = concurrent.futures.wait(futures, timeout=timeout)
        if not_done:
            logger.error("Sweep deadline exceeded, cancelling %d pending renewals", len(not_done))
            for future in not_done:
                logger.error("Certificate %s is still being renewed, it won't be imported", futures[future])
            cancel_event.set()
        executor.shutdown(wait=False, cancel_futures=True)

        results = {}
        for future, name in futures.items():
            if future in done:
                results[name] = future.result()
            else:
                results[name] = RenewalResult(name, RenewalStatus.FAILED, error='Sweep deadline exceeded')

        counters = {status: 0 for status in RenewalStatus}
        for result in results.values():
            counters[result.status] += 1
        logger.info("Renewal sweep finished: %s", ', '.join('{}={}'.format(status.value, count)
                                                            for status, count in counters.items()))
        return results


def build_renewer(config):
    """Wires a CertificateRenewer out of config"""
    secret_store = SECRET_STORES[config.secret_store]()

    if config.key_cache['backend'] == 'file':
        storage = FileKeyCacheStorage(config.key_cache['path'])
    else:
        storage = SecretStoreKeyCacheStorage(secret_store, config.key_cache['vault_uri'],
                                             config.key_cache['secret_name'])
    key_cache = AccountKeyCache(storage, ttl_hours=config.key_cache['ttl_hours'])

    publishers = {provider_name: build_publisher(provider_name, provider_config)
                  for provider_name, provider_config in config.dns_providers.items()}
    handlers = [CHALLENGE_HANDLERS[handler_name].from_config(config.challenges, publishers)
                for handler_name in config.challenges['handlers']]

    issuer = ACMEIssuer(key_cache=key_cache,
                        challenge_handlers=handlers,
                        acme_servers=config.acme_servers,
                        email=config.email,
                        poll_interval=config.validation['poll_interval'],
                        max_poll_attempts=config.validation['max_poll_attempts'],
                        validation_timeout=config.validation['timeout'],
                        finalize_timeout=config.validation['finalize_timeout'],
                        max_workers=config.validation['max_workers'])

    return CertificateRenewer(config, secret_store, issuer)


def seconds_until(sweep_time, now=None):
    """Seconds from now until the next daily occurrence of sweep_time (UTC)"""
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    next_run = datetime.datetime.combine(now.date(), sweep_time, tzinfo=datetime.timezone.utc)
    if next_run <= now:
        next_run += datetime.timedelta(days=1)
    return (next_run - now).total_seconds()


class RenewerDaemon:
    """Runs the renewal sweep once per day"""
    def __init__(self, config_path=PATHS['config']):
        self.config_path = config_path
        self.stop_event = threading.Event()
        self.renewer = None
        self.sighup_handler()

    def sighup_handler(self, *_):
        """Reloads the configuration. It's also called once at the beginning to perform the initial setup"""
        logger.info("Loading configuration from %s", self.config_path)
        try:
            self.renewer = build_renewer(RenewerConfig.load(self.config_path))
        except ConfigError:
            if self.renewer is None:
                raise
            logger.exception("Invalid configuration, keeping the previous one")

    def sigterm_handler(self, *_):
        """Stops the daemon after the ongoing sweep"""
        logger.info("Shutting down")
        self.stop_event.set()

    def run(self):
        """Sweeps at the configured time every day until stopped"""
        signal.signal(signal.SIGHUP, self.sighup_handler)
        signal.signal(signal.SIGTERM, self.sigterm_handler)
        while True:
            sweep_time = self.renewer.config.sweep['time']
            wait_seconds = seconds_until(sweep_time)
            logger.info("Next renewal sweep at %s UTC, in %.0f seconds", sweep_time.strftime('%H:%M'), wait_seconds)
            if self.stop_event.wait(wait_seconds):
                return
            self.renewer.renew_all_due()


def main():
    """
    Main backend entry point.
    """
    parser = argparse.ArgumentParser(description="""Runs the certificate renewer backend. This is
    responsible for renewing your configured certificates against their ACME server and storing
    them on the configured secret store. This does not provide the HTTP API.""")
    parser.add_argument('--version', action='version', version='0.1.0')
    parser.add_argument('--config', default=PATHS['config'], help='Configuration file')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--once', action='store_true', help='Run a single renewal sweep and exit')
    mode.add_argument('--renew', metavar='NAME', help='Renew the certificate NAME and exit')
    parser.add_argument('--force', action='store_true', help='Renew even if the certificate is not due (--renew)')
    args = parser.parse_args()

    logging.config.dictConfig(LOGGING_CONFIG)

    if args.force and not args.renew:
        parser.error('--force requires --renew')

    try:
        if args.renew:
            renewer = build_renewer(RenewerConfig.load(args.config))
            try:
                record = renewer.renew(args.renew, force=args.force)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Unable to renew certificate %s", args.renew)
                sys.exit(1)
            if record is None:
                logger.info("Certificate %s is not due for renewal", args.renew)
            sys.exit(0)

        if args.once:
            renewer = build_renewer(RenewerConfig.load(args.config))
            results = renewer.renew_all_due()
            failed = [name for name, result in results.items() if result.status is RenewalStatus.FAILED]
            sys.exit(1 if failed else 0)

        RenewerDaemon(config_path=args.config).run()
    except ConfigError:
        logger.exception("Unable to load configuration from %s", args.config)
        sys.exit(2)


if __name__ == '__main__':
    main()
