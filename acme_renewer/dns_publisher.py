"""
Module containing the dns-01 TXT record publication logic and the DNS zone clients it relies on
"""
import abc
import logging
import os
import subprocess
import threading
import time

import yaml

from acme_renewer.dns import DNSError
from acme_renewer.x509 import secure_opener

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

CHALLENGE_RECORD_NAME = '_acme-challenge'
DEFAULT_RECORD_TTL = 60
DEFAULT_SETTLE_TIME = 10.0
DEFAULT_ZONE_UPDATE_CMD_TIMEOUT = 60.0


class DomainOutsideZoneError(DNSError):
    """The domain being validated doesn't belong to the configured DNS zone"""


class DNSZoneUpdateError(DNSError):
    """The DNS zone couldn't be updated"""


class DNSRecordSet:
    """TXT record set tagged with the ACME order that created it"""
    def __init__(self, *, zone, name, ttl=DEFAULT_RECORD_TTL, values=(), order_id=None):
        self.zone = zone
        self.name = name
        self.ttl = ttl
        self.values = list(values)
        self.order_id = order_id

    @property
    def fqdn(self):
        """Fully qualified name of the record set"""
        if self.name == '@':
            return self.zone
        return '{}.{}'.format(self.name, self.zone)

    def __eq__(self, other):
        if not isinstance(other, DNSRecordSet):
            return NotImplemented
        return (self.zone, self.name, self.ttl, self.values, self.order_id) == \
            (other.zone, other.name, other.ttl, other.values, other.order_id)

    def __repr__(self):
        return 'DNSRecordSet(zone={!r}, name={!r}, ttl={}, values={!r}, order_id={!r})'.format(
            self.zone, self.name, self.ttl, self.values, self.order_id)


def get_record_name(domain, zone):
    """
    Returns the name of the challenge record set relative to zone:
        - example.com on zone example.com -> _acme-challenge
        - www.example.com on zone example.com -> _acme-challenge.www
    """
    domain = domain.lower().rstrip('.')
    zone = zone.lower().rstrip('.')
    if domain == zone:
        return CHALLENGE_RECORD_NAME

    suffix = '.' + zone
    if not domain.endswith(suffix) or len(domain) == len(suffix):
        raise DomainOutsideZoneError('Domain name {} is not under the zone name {}'.format(domain, zone))

    return '{}.{}'.format(CHALLENGE_RECORD_NAME, domain[:-len(suffix)])


class DNSZoneClient(abc.ABC):
    """Operations required from a DNS provider"""

    @abc.abstractmethod
    def get_txt_record_set(self, dns_config, record_name):
        """Returns the DNSRecordSet named record_name on dns_config.zone or None if it doesn't exist"""

    @abc.abstractmethod
    def upsert_txt_record_set(self, dns_config, record_set):
        """Creates or replaces record_set on dns_config.zone"""


class ZoneUpdateCmdClient(DNSZoneClient):
    """
    DNS zone client that keeps the TXT record sets on a local YAML state file
    and publishes them running an external zone update command:
        <zone_update_cmd> --remote-servers <server>... -- <fqdn> <value> [<fqdn> <value>...]
    """
    def __init__(self, *, zone_update_cmd, state_file, sync_dns_servers=(),
                 zone_update_cmd_timeout=DEFAULT_ZONE_UPDATE_CMD_TIMEOUT):
        self.zone_update_cmd = zone_update_cmd
        self.zone_update_cmd_timeout = zone_update_cmd_timeout
        self.sync_dns_servers = list(sync_dns_servers)
        self.state_file = state_file
        self._lock = threading.Lock()

    def _load_state(self):
        try:
            with open(self.state_file, 'r', encoding='utf-8') as state_f:
                return yaml.safe_load(state_f) or {}
        except FileNotFoundError:
            return {}
        except (OSError, yaml.YAMLError) as state_error:
            raise DNSZoneUpdateError('Unable to read DNS state file {}'.format(self.state_file)) from state_error

    def _save_state(self, state):
        try:
            with open(self.state_file, 'w', encoding='utf-8', opener=secure_opener) as state_f:
                yaml.safe_dump(state, state_f, default_flow_style=False)
        except OSError as state_error:
            raise DNSZoneUpdateError('Unable to write DNS state file {}'.format(self.state_file)) from state_error

    def get_txt_record_set(self, dns_config, record_name):
        with self._lock:
            state = self._load_state()

        try:
            record = state[dns_config.zone][record_name]
        except (KeyError, TypeError):
            return None

        return DNSRecordSet(zone=dns_config.zone, name=record_name, ttl=record.get('ttl', DEFAULT_RECORD_TTL),
                            values=record.get('values', []), order_id=record.get('order'))

    def upsert_txt_record_set(self, dns_config, record_set):
        params = ['--remote-servers'] + self.sync_dns_servers + ['--']
        for value in record_set.values:
            params.append(record_set.fqdn)
            params.append(value)

        logger.info("Running subprocess %s", [self.zone_update_cmd] + params)
        try:
            subprocess.check_call([self.zone_update_cmd] + params,
                                  stdout=subprocess.DEVNULL,
                                  stderr=subprocess.DEVNULL,
                                  timeout=self.zone_update_cmd_timeout)
        except subprocess.CalledProcessError as cpe:
            raise DNSZoneUpdateError('Unexpected return code spawning DNS zone updater: {}'.format(
                cpe.returncode)) from cpe
        except subprocess.TimeoutExpired as timeout_error:
            raise DNSZoneUpdateError('Unable to update DNS zone in {} seconds'.format(
                self.zone_update_cmd_timeout)) from timeout_error
        except OSError as os_error:
            raise DNSZoneUpdateError('Unable to spawn DNS zone updater {}'.format(
                self.zone_update_cmd)) from os_error

        with self._lock:
            state = self._load_state()
            state.setdefault(dns_config.zone, {})[record_set.name] = {
                'ttl': record_set.ttl,
                'values': list(record_set.values),
                'order': record_set.order_id,
            }
            self._save_state(state)


class DNSRecordPublisher:
    """Publishes dns-01 challenge values as TXT records through a DNSZoneClient"""
    def __init__(self, zone_client, record_ttl=DEFAULT_RECORD_TTL, settle_time=DEFAULT_SETTLE_TIME):
        self.zone_client = zone_client
        self.record_ttl = record_ttl
        self.settle_time = settle_time

    def publish_challenge_record(self, domain, value, dns_config, order_id, cancel_event=None):
        """
        Publishes value on the challenge record of domain.
        Values published for the same order_id are accumulated on the same record set, which
        is required when several identifiers of one order share a record (e.g. apex + wildcard).
        Record sets left by any other order are replaced.
        """
        record_name = get_record_name(domain, dns_config.zone)
        record_set = DNSRecordSet(zone=dns_config.zone, name=record_name, ttl=self.record_ttl,
                                  values=[value], order_id=order_id)
        logger.info("Create DNS TXT record %s: %s", record_set.fqdn, value)

        old_record_set = self.zone_client.get_txt_record_set(dns_config, record_name)
        if old_record_set is not None and old_record_set.order_id == order_id:
            logger.info("Found existing DNS TXT records for the same order, adding the new value")
            record_set.values = [old_value for old_value in old_record_set.values if old_value != value]
            record_set.values.append(value)

        self.zone_client.upsert_txt_record_set(dns_config, record_set)

        if self.settle_time > 0:
            logger.debug("Waiting %.1f seconds for DNS propagation", self.settle_time)
            if cancel_event is None:
                time.sleep(self.settle_time)
            else:
                cancel_event.wait(self.settle_time)

        return record_set


def _build_zone_update_cmd_client(provider_config):
    zone_update_cmd = provider_config.get('zone_update_cmd', '/bin/echo')
    if not os.access(zone_update_cmd, os.X_OK):
        logger.warning("DNS zone updater CMD %s is not executable", zone_update_cmd)
    return ZoneUpdateCmdClient(
        zone_update_cmd=zone_update_cmd,
        zone_update_cmd_timeout=provider_config.get('zone_update_cmd_timeout', DEFAULT_ZONE_UPDATE_CMD_TIMEOUT),
        sync_dns_servers=provider_config.get('sync_dns_servers', []),
        state_file=provider_config['state_file'],
    )


DNS_PROVIDERS = {
    'zone-update-cmd': _build_zone_update_cmd_client,
}


def build_publisher(provider_name, provider_config):
    """Builds the DNSRecordPublisher of the registered DNS provider provider_name"""
    try:
        factory = DNS_PROVIDERS[provider_name]
    except KeyError:
        raise DNSError('Unknown DNS provider {}. Registered providers: {}'.format(
            provider_name, ', '.join(sorted(DNS_PROVIDERS))))

    return DNSRecordPublisher(
        factory(provider_config),
        record_ttl=provider_config.get('record_ttl', DEFAULT_RECORD_TTL),
        settle_time=provider_config.get('settle_time', DEFAULT_SETTLE_TIME),
    )
