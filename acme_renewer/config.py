"""
Module containing configuration handling classes
"""
import datetime
import logging

import yaml

from acme_renewer.acme_requests import (ACME_SERVERS, DEFAULT_FINALIZE_TIMEOUT, DEFAULT_MAX_POLL_ATTEMPTS,
                                        DEFAULT_MAX_WORKERS, DEFAULT_POLL_INTERVAL, DEFAULT_VALIDATION_TIMEOUT)
from acme_renewer.challenges import CHALLENGE_HANDLERS, DNS01, ON_ERROR_FALLTHROUGH, ON_ERROR_POLICIES
from acme_renewer.dns_publisher import DNS_PROVIDERS
from acme_renewer.key_cache import DEFAULT_TTL_HOURS
from acme_renewer.secret_store import SECRET_STORES, VALID_NAME
from acme_renewer.x509 import DEFAULT_KEY_TYPE, KEY_TYPES

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

# default values that can be customized via the config file. Check the README for a valid example
DEFAULT_RENEWAL_THRESHOLD_DAYS = 20
DEFAULT_PFX_PASSWORD = 'P@ssw0rd'
DEFAULT_KEY_CACHE_BACKEND = 'file'
DEFAULT_KEY_CACHE_PATH = '/var/lib/acme-renewer/accounts'
DEFAULT_KEY_CACHE_SECRET_NAME = 'acme-account-key'
DEFAULT_SECRET_STORE = 'file'
DEFAULT_SWEEP_TIME = datetime.time(2, 15)
DEFAULT_SWEEP_DEADLINE = 3600
KEY_CACHE_BACKENDS = ('file', 'secret-store')


class ConfigError(Exception):
    """Invalid configuration"""


class DNSChallengeConfig:
    """DNS provider and zone used to satisfy the dns-01 challenges of a certificate profile"""
    def __init__(self, *, provider, zone, subscription_id=None, resource_group=None):
        self.provider = provider
        self.zone = zone
        self.subscription_id = subscription_id
        self.resource_group = resource_group

    def __repr__(self):
        return 'DNSChallengeConfig(provider={!r}, zone={!r})'.format(self.provider, self.zone)


class CertificateProfile:
    """Renewal policy of one named certificate"""
    def __init__(self, *, name, domains, acme_server='staging', key_type=DEFAULT_KEY_TYPE, dns_challenge=None,
                 vault_uri=None, kv_cert_name=None, pfx_password=DEFAULT_PFX_PASSWORD, auto_renew=True):
        if not domains:
            raise ConfigError('Certificate {} must include at least one domain'.format(name))
        # a YAML scalar would be split into one letter domains
        if not isinstance(domains, (list, tuple)):
            raise ConfigError('Certificate {} domains must be a list, got: {!r}'.format(name, domains))
        for domain in domains:
            if not isinstance(domain, str) or not domain.strip():
                raise ConfigError('Certificate {} includes an invalid domain: {!r}'.format(name, domain))

        self.name = name
        self.domains = list(domains)
        self.acme_server = acme_server
        self.key_type = key_type
        self.dns_challenge = dns_challenge
        self.vault_uri = vault_uri
        if kv_cert_name is None or not str(kv_cert_name).strip():
            kv_cert_name = name
        self.kv_cert_name = kv_cert_name
        self.pfx_password = pfx_password
        self.auto_renew = auto_renew

    @property
    def common_name(self):
        """The first domain is used as the certificate common name"""
        return self.domains[0]

    def __repr__(self):
        return 'CertificateProfile(name={!r}, domains={!r})'.format(self.name, self.domains)


def _get_number(section, key, default, cast, section_name):
    """Returns section[key] as a positive number or default"""
    try:
        value = cast(section[key])
        if value <= 0:
            raise ValueError(value)
        return value
    except KeyError:
        return default
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid %s.%s value %s. Using the default one: %s", section_name, key,
                       section[key], default)
        return default


def _parse_time(value):
    """Parses HH:MM. YAML 1.1 loads unquoted 2:15 as the base 60 integer 135"""
    if isinstance(value, datetime.time):
        return value
    if isinstance(value, int):
        return datetime.time(*divmod(value, 60))
    return datetime.datetime.strptime(str(value), '%H:%M').time()


class RenewerConfig:
    """Class representing the certificate renewer configuration"""
    def __init__(self, *, certificates, email=None, acme_servers=None,
                 renewal_threshold=datetime.timedelta(days=DEFAULT_RENEWAL_THRESHOLD_DAYS),
                 key_cache=None, secret_store=DEFAULT_SECRET_STORE, dns_providers=None, challenges=None,
                 validation=None, sweep=None):
        self.certificates = certificates
        self.email = email
        self.acme_servers = dict(ACME_SERVERS)
        self.acme_servers.update(acme_servers or {})
        for alias in self.acme_servers:
            if not VALID_NAME.match(str(alias)):
                raise ConfigError('Invalid ACME server alias: {}'.format(alias))
        self.renewal_threshold = renewal_threshold
        self.key_cache = key_cache or {
            'backend': DEFAULT_KEY_CACHE_BACKEND,
            'path': DEFAULT_KEY_CACHE_PATH,
            'ttl_hours': DEFAULT_TTL_HOURS,
        }
        self.secret_store = secret_store
        self.dns_providers = dns_providers or {}
        self.challenges = challenges or {
            'handlers': [DNS01],
            'on_error': ON_ERROR_FALLTHROUGH,
            'validation_dns_servers': None,
        }
        self.validation = validation or {
            'poll_interval': DEFAULT_POLL_INTERVAL,
            'max_poll_attempts': DEFAULT_MAX_POLL_ATTEMPTS,
            'timeout': DEFAULT_VALIDATION_TIMEOUT,
            'finalize_timeout': DEFAULT_FINALIZE_TIMEOUT,
            'max_workers': DEFAULT_MAX_WORKERS,
        }
        self.sweep = sweep or {
            'time': DEFAULT_SWEEP_TIME,
            'deadline': datetime.timedelta(seconds=DEFAULT_SWEEP_DEADLINE),
            'max_workers': DEFAULT_MAX_WORKERS,
        }

        for name, profile in self.certificates.items():
            self._check_profile(name, profile)

    def _check_profile(self, name, profile):
        if profile.acme_server not in self.acme_servers:
            raise ConfigError('Certificate {} references unknown ACME server {}'.format(name, profile.acme_server))
        if profile.key_type not in KEY_TYPES:
            raise ConfigError('Certificate {} uses unsupported key type {}. Supported key types: {}'.format(
                name, profile.key_type, ', '.join(sorted(KEY_TYPES))))
        if not profile.vault_uri:
            raise ConfigError('Certificate {} is missing vault_uri'.format(name))
        if profile.dns_challenge is not None and profile.dns_challenge.provider not in self.dns_providers:
            raise ConfigError('Certificate {} references unconfigured DNS provider {}'.format(
                name, profile.dns_challenge.provider))

    @staticmethod
    def load(file_name):  # pylint: disable=too-many-locals
        """Load a config from the specified file_name"""
        logger.debug("Loading config file: %s", file_name)
        try:
            with open(file_name, encoding='utf-8') as config_file:
                config = yaml.safe_load(config_file) or {}
        except (OSError, yaml.YAMLError) as load_error:
            raise ConfigError('Unable to load config file {}'.format(file_name)) from load_error

        email = config.get('account', {}).get('email')
        if email is None:
            logger.warning("Missing account.email, ACME accounts will be created without contact")

        renewal_threshold_days = _get_number(config, 'renewal_threshold_days', DEFAULT_RENEWAL_THRESHOLD_DAYS,
                                             int, 'config')

        return RenewerConfig(certificates=RenewerConfig._load_certificates(config.get('certificates') or {}),
                             email=email,
                             acme_servers=config.get('acme_servers'),
                             renewal_threshold=datetime.timedelta(days=renewal_threshold_days),
                             key_cache=RenewerConfig._load_key_cache(config.get('key_cache') or {}),
                             secret_store=RenewerConfig._load_secret_store(config.get('secret_store') or {}),
                             dns_providers=RenewerConfig._load_dns_providers(config.get('dns_providers') or {}),
                             challenges=RenewerConfig._load_challenges(config.get('challenges') or {}),
                             validation=RenewerConfig._load_validation(config.get('validation') or {}),
                             sweep=RenewerConfig._load_sweep(config.get('sweep') or {}))

    @staticmethod
    def _load_certificates(certificates):
        ret = {}
        for cert_name, cert_config in certificates.items():
            try:
                dns_challenge = None
                if cert_config.get('dns_challenge'):
                    dns_config = cert_config['dns_challenge']
                    dns_challenge = DNSChallengeConfig(provider=dns_config['provider'],
                                                       zone=dns_config['zone'],
                                                       subscription_id=dns_config.get('subscription_id'),
                                                       resource_group=dns_config.get('resource_group'))

                if 'pfx_password' not in cert_config:
                    logger.warning("Missing pfx_password for certificate %s, using the default placeholder",
                                   cert_name)

                ret[cert_name] = CertificateProfile(
                    name=cert_name,
                    domains=cert_config.get('domains'),
                    acme_server=cert_config.get('acme_server', 'staging'),
                    key_type=cert_config.get('key_type', DEFAULT_KEY_TYPE),
                    dns_challenge=dns_challenge,
                    vault_uri=cert_config.get('vault_uri'),
                    kv_cert_name=cert_config.get('kv_cert_name'),
                    pfx_password=str(cert_config.get('pfx_password', DEFAULT_PFX_PASSWORD)),
                    auto_renew=bool(cert_config.get('auto_renew', True)),
                )
            except (AttributeError, KeyError, TypeError) as cert_error:
                raise ConfigError('Invalid configuration for certificate {}'.format(cert_name)) from cert_error

        return ret

    @staticmethod
    def _load_key_cache(key_cache):
        backend = key_cache.get('backend', DEFAULT_KEY_CACHE_BACKEND)
        if backend not in KEY_CACHE_BACKENDS:
            raise ConfigError('Unknown key cache backend {}. Supported backends: {}'.format(
                backend, ', '.join(KEY_CACHE_BACKENDS)))

        ret = {
            'backend': backend,
            'ttl_hours': _get_number(key_cache, 'ttl_hours', DEFAULT_TTL_HOURS, int, 'key_cache'),
        }
        if backend == 'file':
            ret['path'] = key_cache.get('path', DEFAULT_KEY_CACHE_PATH)
        else:
            if 'vault_uri' not in key_cache:
                raise ConfigError('key_cache.vault_uri is required by the secret-store backend')
            ret['vault_uri'] = key_cache['vault_uri']
            ret['secret_name'] = key_cache.get('secret_name', DEFAULT_KEY_CACHE_SECRET_NAME)

        return ret

    @staticmethod
    def _load_secret_store(secret_store):
        provider = secret_store.get('provider', DEFAULT_SECRET_STORE)
        if provider not in SECRET_STORES:
            raise ConfigError('Unknown secret store {}. Registered secret stores: {}'.format(
                provider, ', '.join(sorted(SECRET_STORES))))
        return provider

    @staticmethod
    def _load_dns_providers(dns_providers):
        ret = {}
        for provider_name, provider_config in dns_providers.items():
            if provider_name not in DNS_PROVIDERS:
                raise ConfigError('Unknown DNS provider {}. Registered providers: {}'.format(
                    provider_name, ', '.join(sorted(DNS_PROVIDERS))))
            provider_config = dict(provider_config or {})
            if 'state_file' not in provider_config:
                raise ConfigError('DNS provider {} is missing state_file'.format(provider_name))
            ret[provider_name] = provider_config

        return ret

    @staticmethod
    def _load_challenges(challenges):
        handlers = challenges.get('handlers', [DNS01])
        for handler in handlers:
            if handler not in CHALLENGE_HANDLERS:
                raise ConfigError('Unknown challenge handler {}. Registered handlers: {}'.format(
                    handler, ', '.join(sorted(CHALLENGE_HANDLERS))))

        on_error = challenges.get('on_error', ON_ERROR_FALLTHROUGH)
        if on_error not in ON_ERROR_POLICIES:
            logger.warning("Ignoring invalid challenges.on_error value %s. Using the default one: %s",
                           on_error, ON_ERROR_FALLTHROUGH)
            on_error = ON_ERROR_FALLTHROUGH

        return {
            'handlers': list(handlers),
            'on_error': on_error,
            'validation_dns_servers': challenges.get('validation_dns_servers'),
        }

    @staticmethod
    def _load_validation(validation):
        return {
            'poll_interval': _get_number(validation, 'poll_interval', DEFAULT_POLL_INTERVAL, float, 'validation'),
            'max_poll_attempts': _get_number(validation, 'max_poll_attempts', DEFAULT_MAX_POLL_ATTEMPTS, int,
                                             'validation'),
            'timeout': _get_number(validation, 'timeout', DEFAULT_VALIDATION_TIMEOUT, float, 'validation'),
            'finalize_timeout': _get_number(validation, 'finalize_timeout', DEFAULT_FINALIZE_TIMEOUT, float,
                                            'validation'),
            'max_workers': _get_number(validation, 'max_workers', DEFAULT_MAX_WORKERS, int, 'validation'),
        }

    @staticmethod
    def _load_sweep(sweep):
        try:
            sweep_time = _parse_time(sweep.get('time', DEFAULT_SWEEP_TIME))
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid sweep.time value %s. Using the default one: %s",
                           sweep.get('time'), DEFAULT_SWEEP_TIME.strftime('%H:%M'))
            sweep_time = DEFAULT_SWEEP_TIME

        deadline = _get_number(sweep, 'deadline', DEFAULT_SWEEP_DEADLINE, int, 'sweep')
        return {
            'time': sweep_time,
            'deadline': datetime.timedelta(seconds=deadline),
            'max_workers': _get_number(sweep, 'max_workers', DEFAULT_MAX_WORKERS, int, 'sweep'),
        }
