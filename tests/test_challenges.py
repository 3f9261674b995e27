import unittest
from unittest import mock

import requests
from acme import errors, messages

from acme_renewer.acme_requests import (ACMEError, ACMETransportError, ChallengeHandlerError, OrderSession,
                                        ValidationTimeoutError)
from acme_renewer.challenges import (CHALLENGE_HANDLERS, ON_ERROR_FAIL_FAST, DNS01ChallengeHandler)
from acme_renewer.config import CertificateProfile, DNSChallengeConfig
from acme_renewer.dns import DNSFailedQueryError, DNSServerResolutionError
from acme_renewer.dns_publisher import DNSZoneUpdateError

ORDER_ID = 'https://acme.example.org/order/1'


def get_authzr(domain, status=messages.STATUS_PENDING, challenge_types=('dns-01',), error=None):
    challbs = []
    for challenge_type in challenge_types:
        challb = mock.MagicMock()
        challb.typ = challenge_type
        challb.validation.return_value = 'validation-{}'.format(domain)
        challb.validation_domain_name.return_value = '_acme-challenge.{}'.format(domain)
        challb.error = error
        challbs.append(challb)

    authzr = mock.MagicMock()
    authzr.uri = 'https://acme.example.org/authz/{}'.format(domain)
    authzr.body.identifier.value = domain
    authzr.body.status = status
    authzr.body.challenges = challbs
    return authzr


def get_profile(**kwargs):
    params = {
        'name': 'example-com',
        'domains': ['example.com', 'www.example.com'],
        'dns_challenge': DNSChallengeConfig(provider='zone-update-cmd', zone='example.com'),
        'vault_uri': 'file:///var/lib/acme-renewer/vault',
    }
    params.update(kwargs)
    return CertificateProfile(**params)


def get_session(profile):
    session = mock.MagicMock(spec=OrderSession)
    session.profile = profile
    session.order_id = ORDER_ID
    session.account = mock.MagicMock()
    session.acme_client = mock.MagicMock()
    session.cancel_event = mock.MagicMock()
    return session


class DNS01ChallengeHandlerTest(unittest.TestCase):
    def setUp(self):
        self.publisher = mock.MagicMock()
        self.handler = DNS01ChallengeHandler({'zone-update-cmd': self.publisher})
        self.profile = get_profile()
        self.session = get_session(self.profile)

    def test_registry(self):
        self.assertIs(CHALLENGE_HANDLERS['dns-01'], DNS01ChallengeHandler)
        self.assertEqual(DNS01ChallengeHandler.priority, 1)

    def test_try_complete(self):
        authzr = get_authzr('www.example.com')
        challb = authzr.body.challenges[0]

        challr = self.handler.try_complete(authzr, self.session, self.profile)

        self.assertIs(challr, self.session.acme_client.answer_challenge.return_value)
        challb.validation.assert_called_once_with(self.session.account.jkey)
        self.publisher.publish_challenge_record.assert_called_once_with(
            'www.example.com', 'validation-www.example.com', self.profile.dns_challenge, ORDER_ID,
            cancel_event=self.session.cancel_event)
        self.session.acme_client.answer_challenge.assert_called_once_with(
            challb, challb.response.return_value)
        challb.response.assert_called_once_with(self.session.account.jkey)
        self.assertEqual(self.session.check_deadline.call_count, 2)

    def test_picks_dns01_challenge(self):
        authzr = get_authzr('www.example.com', challenge_types=('http-01', 'tls-alpn-01', 'dns-01'))
        self.handler.try_complete(authzr, self.session, self.profile)
        self.session.acme_client.answer_challenge.assert_called_once_with(
            authzr.body.challenges[2], authzr.body.challenges[2].response.return_value)

    def test_not_applicable(self):
        test_cases = (
            ('no dns-01 challenge', get_authzr('www.example.com', challenge_types=('http-01',)), self.profile),
            ('no dns configuration', get_authzr('www.example.com'), get_profile(dns_challenge=None)),
        )
        for name, authzr, profile in test_cases:
            with self.subTest(name=name):
                self.assertIsNone(self.handler.try_complete(authzr, self.session, profile))
        self.publisher.publish_challenge_record.assert_not_called()
        self.session.acme_client.answer_challenge.assert_not_called()

    def test_fallthrough_on_errors(self):
        test_cases = (
            ('publish error', DNSZoneUpdateError('boom'), None),
            ('answer error', None, errors.Error('boom')),
            ('answer transport error', None, requests.exceptions.ConnectionError('boom')),
        )
        for name, publish_side_effect, answer_side_effect in test_cases:
            with self.subTest(name=name):
                self.publisher.publish_challenge_record.side_effect = publish_side_effect
                self.session.acme_client.answer_challenge.side_effect = answer_side_effect
                with self.assertLogs('acme_renewer.challenges', level='ERROR'):
                    self.assertIsNone(self.handler.try_complete(get_authzr('www.example.com'), self.session,
                                                                self.profile))

    def test_fail_fast(self):
        handler = DNS01ChallengeHandler({'zone-update-cmd': self.publisher}, on_error=ON_ERROR_FAIL_FAST)
        self.publisher.publish_challenge_record.side_effect = DNSZoneUpdateError('boom')
        with self.assertRaises(ChallengeHandlerError) as context:
            handler.try_complete(get_authzr('www.example.com'), self.session, self.profile)
        self.assertIsInstance(context.exception.__cause__, DNSZoneUpdateError)
        self.assertIsInstance(context.exception, ACMEError)

        self.publisher.publish_challenge_record.side_effect = None
        self.session.acme_client.answer_challenge.side_effect = requests.exceptions.ConnectionError('boom')
        with self.assertRaises(ChallengeHandlerError) as context:
            handler.try_complete(get_authzr('www.example.com'), self.session, self.profile)
        self.assertIsInstance(context.exception.__cause__, ACMETransportError)

    def test_unconfigured_provider(self):
        profile = get_profile(dns_challenge=DNSChallengeConfig(provider='azure-dns', zone='example.com'))
        with self.assertLogs('acme_renewer.challenges', level='ERROR'):
            self.assertIsNone(self.handler.try_complete(get_authzr('www.example.com'), self.session, profile))

    def test_deadline_propagates(self):
        self.session.check_deadline.side_effect = ValidationTimeoutError('Deadline exceeded')
        with self.assertRaises(ValidationTimeoutError):
            self.handler.try_complete(get_authzr('www.example.com'), self.session, self.profile)
        self.publisher.publish_challenge_record.assert_not_called()

    def test_invalid_policy(self):
        with self.assertRaises(ValueError):
            DNS01ChallengeHandler({}, on_error='ignore')

    @mock.patch('acme_renewer.challenges.Resolver')
    def test_prevalidation(self, resolver_mock):
        handler = DNS01ChallengeHandler({'zone-update-cmd': self.publisher},
                                        validation_dns_servers=['ns0.example.com', 'ns1.example.com'])
        resolver_mock.return_value.has_txt_value.side_effect = [True, False]
        with self.assertLogs('acme_renewer.challenges', level='WARNING') as logs:
            challr = handler.try_complete(get_authzr('www.example.com'), self.session, self.profile)

        # prevalidation failures are reported but the challenge is answered anyway
        self.assertIsNotNone(challr)
        self.assertEqual(len(logs.records), 1)
        self.assertIn('ns1.example.com', logs.output[0])
        resolver_mock.assert_has_calls([
            mock.call(nameservers=('ns0.example.com',), timeout=handler.validation_timeout),
            mock.call().has_txt_value('_acme-challenge.www.example.com', 'validation-www.example.com'),
            mock.call(nameservers=('ns1.example.com',), timeout=handler.validation_timeout),
            mock.call().has_txt_value('_acme-challenge.www.example.com', 'validation-www.example.com'),
        ])

    @mock.patch('acme_renewer.challenges.Resolver')
    def test_prevalidation_dns_errors(self, resolver_mock):
        handler = DNS01ChallengeHandler({'zone-update-cmd': self.publisher},
                                        validation_dns_servers=['ns0.example.com', 'ns1.example.com'])
        resolver_mock.side_effect = [DNSServerResolutionError('Unable to resolve DNS server ns0.example.com'),
                                     mock.DEFAULT]
        resolver_mock.return_value.has_txt_value.side_effect = DNSFailedQueryError('timeout')
        with self.assertLogs('acme_renewer.challenges', level='WARNING') as logs:
            challr = handler.try_complete(get_authzr('www.example.com'), self.session, self.profile)

        self.assertIsNotNone(challr)
        self.assertEqual(len(logs.records), 2)

    def test_from_config(self):
        handler = DNS01ChallengeHandler.from_config({
            'handlers': ['dns-01'],
            'on_error': ON_ERROR_FAIL_FAST,
            'validation_dns_servers': ['ns0.example.com'],
        }, {'zone-update-cmd': self.publisher})
        self.assertEqual(handler.on_error, ON_ERROR_FAIL_FAST)
        self.assertEqual(handler.validation_dns_servers, ['ns0.example.com'])
        self.assertEqual(handler.publishers, {'zone-update-cmd': self.publisher})
