import datetime
import os
import tempfile
import unittest

import yaml

from acme_renewer.config import (DEFAULT_PFX_PASSWORD, DEFAULT_SWEEP_TIME, CertificateProfile, ConfigError,
                                 DNSChallengeConfig, RenewerConfig)

VALID_CONFIG_EXAMPLE = '''
account:
  email: admin@example.com
acme_servers:
  pebble: https://127.0.0.1:14000/dir
renewal_threshold_days: 30
key_cache:
  backend: secret-store
  vault_uri: file:///var/lib/acme-renewer/vault
  ttl_hours: 48
dns_providers:
  zone-update-cmd:
    zone_update_cmd: /usr/local/bin/dns-update
    zone_update_cmd_timeout: 30
    sync_dns_servers:
      - ns0.example.com
    state_file: /var/lib/acme-renewer/dns-state.yaml
    settle_time: 5
challenges:
  on_error: fail-fast
  validation_dns_servers:
    - ns0.example.com
validation:
  poll_interval: 2
  max_poll_attempts: 10
  max_workers: 8
sweep:
  time: 03:30
  deadline: 1800
  max_workers: 2
certificates:
  example-com:
    domains:
      - example.com
      - www.example.com
    acme_server: pebble
    key_type: ec-prime256v1
    dns_challenge:
      provider: zone-update-cmd
      zone: example.com
      subscription_id: 00000000-0000-0000-0000-000000000000
      resource_group: dns
    vault_uri: file:///var/lib/acme-renewer/vault
    kv_cert_name: example-com-cert
    pfx_password: s3cr3t
  example-org:
    domains:
      - example.org
    vault_uri: file:///var/lib/acme-renewer/vault
    kv_cert_name: ' '
    auto_renew: false
'''


class CertificateProfileTest(unittest.TestCase):
    def test_defaults(self):
        profile = CertificateProfile(name='example-com', domains=['example.com', 'www.example.com'],
                                     vault_uri='file:///vault')
        self.assertEqual(profile.common_name, 'example.com')
        self.assertEqual(profile.kv_cert_name, 'example-com')
        self.assertEqual(profile.pfx_password, DEFAULT_PFX_PASSWORD)
        self.assertEqual(profile.acme_server, 'staging')
        self.assertEqual(profile.key_type, 'rsa-2048')
        self.assertTrue(profile.auto_renew)
        self.assertIsNone(profile.dns_challenge)

    def test_blank_kv_cert_name(self):
        for kv_cert_name in (None, '', '   '):
            with self.subTest(kv_cert_name=kv_cert_name):
                profile = CertificateProfile(name='example-com', domains=['example.com'], kv_cert_name=kv_cert_name)
                self.assertEqual(profile.kv_cert_name, 'example-com')

    def test_empty_domains(self):
        for domains in (None, []):
            with self.subTest(domains=domains):
                with self.assertRaises(ConfigError):
                    CertificateProfile(name='example-com', domains=domains)

    def test_invalid_domains(self):
        for domains in ('example.com', ['example.com', ''], ['example.com', ' '], ['example.com', 42]):
            with self.subTest(domains=domains):
                with self.assertRaises(ConfigError):
                    CertificateProfile(name='example-com', domains=domains)


class RenewerConfigTest(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.tmpdir.name, 'config.yaml')

    def tearDown(self):
        self.tmpdir.cleanup()

    def _write_config(self, content):
        with open(self.config_path, 'w', encoding='utf-8') as config_file:
            if isinstance(content, str):
                config_file.write(content)
            else:
                yaml.safe_dump(content, config_file)

    def test_load(self):
        self._write_config(VALID_CONFIG_EXAMPLE)
        config = RenewerConfig.load(self.config_path)

        self.assertEqual(config.email, 'admin@example.com')
        self.assertEqual(config.acme_servers['pebble'], 'https://127.0.0.1:14000/dir')
        self.assertIn('staging', config.acme_servers)
        self.assertIn('production', config.acme_servers)
        self.assertEqual(config.renewal_threshold, datetime.timedelta(days=30))
        self.assertEqual(config.key_cache, {
            'backend': 'secret-store',
            'ttl_hours': 48,
            'vault_uri': 'file:///var/lib/acme-renewer/vault',
            'secret_name': 'acme-account-key',
        })
        self.assertEqual(config.secret_store, 'file')
        self.assertEqual(config.dns_providers['zone-update-cmd']['settle_time'], 5)
        self.assertEqual(config.challenges, {
            'handlers': ['dns-01'],
            'on_error': 'fail-fast',
            'validation_dns_servers': ['ns0.example.com'],
        })
        self.assertEqual(config.validation['poll_interval'], 2.0)
        self.assertEqual(config.validation['max_poll_attempts'], 10)
        self.assertEqual(config.validation['timeout'], 300.0)
        self.assertEqual(config.validation['finalize_timeout'], 90.0)
        self.assertEqual(config.validation['max_workers'], 8)
        self.assertEqual(config.sweep['time'], datetime.time(3, 30))
        self.assertEqual(config.sweep['deadline'], datetime.timedelta(seconds=1800))
        self.assertEqual(config.sweep['max_workers'], 2)

        profile = config.certificates['example-com']
        self.assertEqual(profile.domains, ['example.com', 'www.example.com'])
        self.assertEqual(profile.acme_server, 'pebble')
        self.assertEqual(profile.key_type, 'ec-prime256v1')
        self.assertIsInstance(profile.dns_challenge, DNSChallengeConfig)
        self.assertEqual(profile.dns_challenge.provider, 'zone-update-cmd')
        self.assertEqual(profile.dns_challenge.zone, 'example.com')
        self.assertEqual(profile.dns_challenge.resource_group, 'dns')
        self.assertEqual(profile.kv_cert_name, 'example-com-cert')
        self.assertEqual(profile.pfx_password, 's3cr3t')
        self.assertTrue(profile.auto_renew)

        profile = config.certificates['example-org']
        self.assertEqual(profile.kv_cert_name, 'example-org')
        self.assertEqual(profile.pfx_password, DEFAULT_PFX_PASSWORD)
        self.assertIsNone(profile.dns_challenge)
        self.assertFalse(profile.auto_renew)

    def test_defaults(self):
        self._write_config({'certificates': {}})
        with self.assertLogs('acme_renewer.config', level='WARNING'):
            config = RenewerConfig.load(self.config_path)

        self.assertIsNone(config.email)
        self.assertEqual(config.renewal_threshold, datetime.timedelta(days=20))
        self.assertEqual(config.key_cache['backend'], 'file')
        self.assertEqual(config.challenges['on_error'], 'fallthrough')
        self.assertEqual(config.validation['poll_interval'], 5.0)
        self.assertEqual(config.sweep['time'], DEFAULT_SWEEP_TIME)
        self.assertEqual(config.certificates, {})

    def test_invalid_optional_values(self):
        self._write_config({
            'renewal_threshold_days': 'foo',
            'challenges': {'on_error': 'ignore'},
            'validation': {'poll_interval': -1, 'max_poll_attempts': 'many'},
            'sweep': {'time': '25:99', 'max_workers': 0},
            'certificates': {},
        })
        with self.assertLogs('acme_renewer.config', level='WARNING') as logs:
            config = RenewerConfig.load(self.config_path)

        self.assertEqual(config.renewal_threshold, datetime.timedelta(days=20))
        self.assertEqual(config.challenges['on_error'], 'fallthrough')
        self.assertEqual(config.validation['poll_interval'], 5.0)
        self.assertEqual(config.validation['max_poll_attempts'], 60)
        self.assertEqual(config.sweep['time'], DEFAULT_SWEEP_TIME)
        self.assertEqual(config.sweep['max_workers'], 4)
        self.assertGreaterEqual(len(logs.records), 6)

    def test_invalid_configurations(self):
        certificate = {
            'domains': ['example.com'],
            'vault_uri': 'file:///vault',
        }
        test_cases = (
            ('unknown ACME server', {'certificates': {'c': dict(certificate, acme_server='foo')}}),
            ('invalid ACME server alias', {'acme_servers': {'../pebble': 'https://127.0.0.1:14000/dir'}}),
            ('unknown key type', {'certificates': {'c': dict(certificate, key_type='dsa-1024')}}),
            ('missing vault_uri', {'certificates': {'c': {'domains': ['example.com']}}}),
            ('missing domains', {'certificates': {'c': {'vault_uri': 'file:///vault'}}}),
            ('scalar domains', {'certificates': {'c': dict(certificate, domains='example.com')}}),
            ('unconfigured DNS provider', {'certificates': {'c': dict(
                certificate, dns_challenge={'provider': 'zone-update-cmd', 'zone': 'example.com'})}}),
            ('incomplete DNS challenge', {'certificates': {'c': dict(
                certificate, dns_challenge={'provider': 'zone-update-cmd'})}}),
            ('unknown DNS provider', {'dns_providers': {'azure-dns': {'state_file': '/tmp/state'}}}),
            ('missing DNS state file', {'dns_providers': {'zone-update-cmd': {}}}),
            ('unknown challenge handler', {'challenges': {'handlers': ['http-01']}}),
            ('unknown key cache backend', {'key_cache': {'backend': 'redis'}}),
            ('incomplete key cache', {'key_cache': {'backend': 'secret-store'}}),
            ('unknown secret store', {'secret_store': {'provider': 'azure-key-vault'}}),
        )
        for name, config in test_cases:
            with self.subTest(name=name):
                self._write_config(config)
                with self.assertRaises(ConfigError):
                    RenewerConfig.load(self.config_path)

    def test_missing_file(self):
        with self.assertRaises(ConfigError):
            RenewerConfig.load(os.path.join(self.tmpdir.name, 'missing.yaml'))
