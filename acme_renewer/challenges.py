"""
Module containing the ACME challenge handlers.

A challenge handler attempts to satisfy one authorization of an ACME order. It returns the
answered challenge or None if it isn't able to deal with the authorization, letting the
next registered handler give it a try.
"""
import abc
import logging

import requests
from acme import errors

from acme_renewer.acme_requests import ACMEError, ACMETransportError, ChallengeHandlerError, ValidationTimeoutError
from acme_renewer.dns import DEFAULT_DNS_TIMEOUT, DNSError, Resolver

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

DNS01 = 'dns-01'
ON_ERROR_FALLTHROUGH = 'fallthrough'
ON_ERROR_FAIL_FAST = 'fail-fast'
ON_ERROR_POLICIES = (ON_ERROR_FALLTHROUGH, ON_ERROR_FAIL_FAST)


class ChallengeHandler(abc.ABC):
    """Base challenge handler class"""
    priority = 100

    def __init__(self, on_error=ON_ERROR_FALLTHROUGH):
        if on_error not in ON_ERROR_POLICIES:
            raise ValueError('Unknown on_error policy {}'.format(on_error))
        self.on_error = on_error

    def try_complete(self, authzr, session, profile):
        """
        Attempts to satisfy authzr. Returns the answered acme.messages.ChallengeResource or None
        """
        try:
            return self._try_complete(authzr, session, profile)
        except ValidationTimeoutError:
            raise
        except Exception as handler_error:  # pylint: disable=broad-except
            logger.exception("%s failed to complete the challenge for %s", type(self).__name__,
                             authzr.body.identifier.value)
            if self.on_error == ON_ERROR_FAIL_FAST:
                raise ChallengeHandlerError('Unable to complete the challenge for {}'.format(
                    authzr.body.identifier.value)) from handler_error
            return None

    @classmethod
    @abc.abstractmethod
    def from_config(cls, challenges_config, publishers):
        """Builds the handler out of the challenges configuration section"""

    @abc.abstractmethod
    def _try_complete(self, authzr, session, profile):
        """Handler specific logic, exceptions are dealt with by try_complete()"""


class DNS01ChallengeHandler(ChallengeHandler):
    """Satisfies dns-01 challenges publishing the validation value as a TXT record"""
    priority = 1

    def __init__(self, publishers, validation_dns_servers=None, on_error=ON_ERROR_FALLTHROUGH,
                 validation_timeout=DEFAULT_DNS_TIMEOUT):
        super().__init__(on_error=on_error)
        self.publishers = publishers
        self.validation_dns_servers = validation_dns_servers
        self.validation_timeout = validation_timeout

    @classmethod
    def from_config(cls, challenges_config, publishers):
        """Builds the handler out of the challenges configuration section"""
        return cls(publishers,
                   validation_dns_servers=challenges_config.get('validation_dns_servers'),
                   on_error=challenges_config.get('on_error', ON_ERROR_FALLTHROUGH))

    @staticmethod
    def _get_challenge(authzr):
        for challb in authzr.body.challenges:
            if challb.typ == DNS01:
                return challb
        return None

    def _prevalidate(self, validation_domain_name, validation):
        """Checks that every validation DNS server already serves the TXT record. Returns True on success"""
        ret = True
        for dns_server in self.validation_dns_servers:
            try:
                resolver = Resolver(nameservers=(dns_server,), timeout=self.validation_timeout)
                served = resolver.has_txt_value(validation_domain_name, validation)
            except DNSError as dns_error:
                logger.warning("Unable to check %s TXT on DNS server %s: %s", validation_domain_name, dns_server,
                               dns_error)
                ret = False
                continue

            if not served:
                logger.warning("DNS server %s doesn't serve %s TXT %s yet", dns_server, validation_domain_name,
                               validation)
                ret = False

        return ret

    def _try_complete(self, authzr, session, profile):
        dns_config = profile.dns_challenge
        if dns_config is None:
            return None

        challb = self._get_challenge(authzr)
        if challb is None:
            logger.debug("No dns-01 challenge offered for %s", authzr.body.identifier.value)
            return None

        try:
            publisher = self.publishers[dns_config.provider]
        except KeyError:
            raise ACMEError('DNS provider {} is not configured'.format(dns_config.provider))

        domain = authzr.body.identifier.value
        jkey = session.account.jkey
        validation = challb.validation(jkey)

        session.check_deadline()
        publisher.publish_challenge_record(domain, validation, dns_config, session.order_id,
                                           cancel_event=session.cancel_event)

        if self.validation_dns_servers:
            self._prevalidate(challb.validation_domain_name(domain), validation)

        session.check_deadline()
        try:
            challr = session.acme_client.answer_challenge(challb, challb.response(jkey))
        except errors.Error as answer_challenge_error:
            raise ACMEError('Unable to answer challenge') from answer_challenge_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to answer challenge') from request_error

        logger.info("Answered dns-01 challenge for %s", domain)
        return challr


CHALLENGE_HANDLERS = {
    DNS01: DNS01ChallengeHandler,
}
