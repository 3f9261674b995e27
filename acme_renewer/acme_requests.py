"""
Module containing the ACMEv2 issuance engine:
    - ACMEAccount: account creation and rehydration out of a cached key
    - OrderSession: state of one issuance attempt
    - ACMEIssuer: order -> authorize -> challenge -> validate -> finalize -> download
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from enum import Enum

import josepy as jose
import requests
from acme import client, errors, messages

from acme_renewer.x509 import (Certificate, CertificateSigningRequest, RSAPrivateKey, X509Error,
                               generate_private_key)

ACME_SERVERS = {
    'staging': 'https://acme-staging-v02.api.letsencrypt.org/directory',
    'production': 'https://acme-v02.api.letsencrypt.org/directory',
}
DIRECTORY_URL = ACME_SERVERS['production']
TLS_VERIFY = True   # intended to be used during testing
USER_AGENT = 'acme-renewer'
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MAX_POLL_ATTEMPTS = 60
DEFAULT_VALIDATION_TIMEOUT = 300.0
DEFAULT_FINALIZE_TIMEOUT = 90.0
DEFAULT_MAX_WORKERS = 4

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class ACMEError(Exception):
    """Base error class"""


class ACMETransportError(ACMEError):
    """Error related to ACME transport protocol (HTTPS)"""


class ACMEAccountNotFoundError(ACMEError):
    """The ACME directory doesn't know any valid account bound to the key"""


class ACMEIssuedCertificateError(ACMEError):
    """Error handling the recently issued certificate"""


class AuthorizationUnsatisfiableError(ACMEError):
    """None of the challenge handlers has been able to satisfy an authorization"""
    def __init__(self, domain):
        super().__init__('No challenge handler was able to satisfy the authorization for {}'.format(domain))
        self.domain = domain


class DomainValidationFailedError(ACMEError):
    """The ACME directory has marked one or more authorizations as invalid"""
    def __init__(self, failures):
        super().__init__('Error in domain validation: {}'.format(
            ';'.join('{}: {}'.format(domain, ','.join(details)) for domain, details in failures.items())))
        self.failures = failures


class OrderFinalizationError(ACMEError):
    """The ACME directory has refused to finalize the order"""


class ValidationTimeoutError(ACMEError):
    """The deadline has been reached or the issuance has been cancelled"""


class ChallengeHandlerError(ACMEError):
    """A challenge handler has failed and the configured policy is fail-fast"""


class IssuanceState(Enum):
    """Issuance states, FAILED can be reached from any non terminal state"""
    ACCOUNT_READY = 'account-ready'
    ORDER_CREATED = 'order-created'
    AUTHORIZING = 'authorizing'
    VALIDATING = 'validating'
    FINALIZING = 'finalizing'
    DOWNLOADED = 'downloaded'
    DONE = 'done'
    FAILED = 'failed'


def check_deadline(deadline=None, cancel_event=None):
    """Raises ValidationTimeoutError if the issuance has been cancelled or deadline is over"""
    if cancel_event is not None and cancel_event.is_set():
        raise ValidationTimeoutError('Issuance has been cancelled')
    if deadline is not None and datetime.now(timezone.utc) >= deadline:
        raise ValidationTimeoutError('Deadline {} exceeded'.format(deadline.isoformat()))


class ACMEAccount:
    """ACMEv2 account bound to a RSA private key"""
    def __init__(self, *, key=None, regr=None, directory_url=DIRECTORY_URL):
        self.directory_url = directory_url
        if key is not None:
            self.key = key
        else:
            self.key = RSAPrivateKey()
            self.key.generate()
        self.regr = regr
        self._client = None

    @staticmethod
    def _get_acme_client(jkey, regr=None, directory_url=DIRECTORY_URL):
        net = client.ClientNetwork(key=jkey, account=regr, verify_ssl=TLS_VERIFY, user_agent=USER_AGENT)
        try:
            directory = messages.Directory.from_json(net.get(directory_url).json())
        except (errors.Error, ValueError) as dir_error:
            raise ACMEError('Unable to fetch directory URLs') from dir_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to fetch directory URLs') from request_error

        return client.ClientV2(directory, net)

    @property
    def client(self):
        """Return an acme.client.ClientV2 for the current ACMEAccount"""
        if self._client is None:
            self._client = self._get_acme_client(self.jkey, self.regr, directory_url=self.directory_url)
        return self._client

    @property
    def jkey(self):
        """Return a JOSE JWKRSA instance of the account key"""
        return jose.JWKRSA(key=self.key.key)

    @classmethod
    def create(cls, email=None, directory_url=DIRECTORY_URL):
        """Creates a new ACME Account using the specified email as point of contact"""
        ret = ACMEAccount(directory_url=directory_url)
        new_reg = messages.NewRegistration.from_data(email=email,
                                                     terms_of_service_agreed=True)
        acme = cls._get_acme_client(ret.jkey, directory_url=directory_url)
        try:
            regr = acme.new_account(new_reg)
        except errors.Error as account_error:
            raise ACMEError('Unable to create ACME account') from account_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to create ACME account') from request_error

        ret.regr = messages.RegistrationResource(body=regr.body, uri=regr.uri)
        ret._client = acme  # pylint: disable=protected-access
        logger.info("Created ACME account %s on %s", ret.regr.uri, directory_url)

        return ret

    @classmethod
    def load(cls, key, directory_url=DIRECTORY_URL):
        """Rehydrates the existing account bound to key"""
        logger.debug("Looking up the ACME account bound to the cached key on directory: %s", directory_url)
        ret = ACMEAccount(key=key, directory_url=directory_url)
        acme = cls._get_acme_client(ret.jkey, directory_url=directory_url)
        lookup = messages.NewRegistration.from_data(only_return_existing=True)
        try:
            regr = acme.new_account(lookup)
        except errors.ConflictError as conflict:
            # an existing account is reported as a conflict carrying its location
            regr = messages.RegistrationResource(uri=conflict.location, body=messages.Registration())
        except errors.Error as lookup_error:
            raise ACMEAccountNotFoundError('Unable to find the ACME account bound to the key') from lookup_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to look up the ACME account') from request_error

        try:
            regr = acme.query_registration(regr)
        except errors.Error as query_error:
            raise ACMEAccountNotFoundError('Unable to verify ACME account status') from query_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to verify ACME account status') from request_error

        if regr.body.status != 'valid':
            raise ACMEAccountNotFoundError('ACME account {} marked as {}'.format(regr.uri, regr.body.status))

        ret.regr = regr
        ret._client = acme  # pylint: disable=protected-access
        logger.info("Loaded ACME account %s from %s", regr.uri, directory_url)

        return ret


class OrderSession:
    """State of one issuance attempt for a CertificateProfile. Never persisted"""
    def __init__(self, profile, deadline=None, cancel_event=None):
        self.profile = profile
        self.deadline = deadline
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self.account = None
        self.private_key = None
        self.csr = None
        self.order = None
        self.authorizations = []
        self.state = None

    @property
    def acme_client(self):
        """acme.client.ClientV2 of the session account"""
        return self.account.client

    @property
    def order_id(self):
        """Identifier of the ACME order, used to tag the published DNS records"""
        if self.order is None:
            return None
        return self.order.uri

    def check_deadline(self):
        """Raises ValidationTimeoutError if the session has been cancelled or its deadline is over"""
        check_deadline(self.deadline, self.cancel_event)

    def remaining_seconds(self, default):
        """Seconds left until the deadline, capped at default"""
        if self.deadline is None:
            return default
        remaining = (self.deadline - datetime.now(timezone.utc)).total_seconds()
        return max(0.0, min(default, remaining))


class ACMEIssuer:
    """ACMEIssuer provides a high level method to get a PKCS#12 bundle for a CertificateProfile"""
    def __init__(self, *, key_cache, challenge_handlers, acme_servers=None, email=None,
                 poll_interval=DEFAULT_POLL_INTERVAL, max_poll_attempts=DEFAULT_MAX_POLL_ATTEMPTS,
                 validation_timeout=DEFAULT_VALIDATION_TIMEOUT, finalize_timeout=DEFAULT_FINALIZE_TIMEOUT,
                 max_workers=DEFAULT_MAX_WORKERS):
        self.key_cache = key_cache
        self.challenge_handlers = sorted(challenge_handlers, key=lambda handler: handler.priority)
        self.acme_servers = dict(ACME_SERVERS)
        if acme_servers:
            self.acme_servers.update(acme_servers)
        self.email = email
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.validation_timeout = validation_timeout
        self.finalize_timeout = finalize_timeout
        self.max_workers = max_workers

    def _get_directory_url(self, server_alias):
        try:
            return self.acme_servers[server_alias]
        except KeyError:
            raise ACMEError('Unknown ACME server {}'.format(server_alias))

    def get_or_create_account(self, server_alias, deadline=None, cancel_event=None):
        """Returns the ACMEAccount for server_alias, creating it if there isn't any cached key"""
        directory_url = self._get_directory_url(server_alias)

        check_deadline(deadline, cancel_event)
        key = self.key_cache.get_account_key(server_alias)
        if key is not None:
            try:
                return ACMEAccount.load(key, directory_url=directory_url)
            except ACMEAccountNotFoundError:
                logger.warning("The cached key for %s isn't bound to any valid account, creating a new one",
                               server_alias)

        check_deadline(deadline, cancel_event)
        account = ACMEAccount.create(self.email, directory_url=directory_url)
        try:
            self.key_cache.save_account_key(account.key, server_alias)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Unable to cache the account key for %s", server_alias)

        return account

    def request_certificate(self, profile, deadline=None, cancel_event=None):
        """Issues a certificate for profile. Returns the PKCS#12 bundle protected by profile.pfx_password"""
        return self.issue(OrderSession(profile, deadline=deadline, cancel_event=cancel_event))

    def issue(self, session):
        """Runs the issuance state machine on session"""
        try:
            return self._issue(session)
        except Exception:
            logger.error("Issuance for %s failed on state %s", session.profile.name,
                         session.state.value if session.state else None)
            session.state = IssuanceState.FAILED
            raise

    def _issue(self, session):
        profile = session.profile

        session.account = self.get_or_create_account(profile.acme_server, deadline=session.deadline,
                                                     cancel_event=session.cancel_event)
        session.state = IssuanceState.ACCOUNT_READY

        session.private_key = generate_private_key(profile.key_type)
        session.csr = CertificateSigningRequest(session.private_key, profile.domains)
        session.check_deadline()
        try:
            session.order = session.acme_client.new_order(session.csr.pem)
        except errors.Error as order_error:
            raise ACMEError('Unable to create order') from order_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to create order') from request_error
        session.authorizations = list(session.order.authorizations)
        session.state = IssuanceState.ORDER_CREATED
        logger.info("Created order %s for %s", session.order_id, ', '.join(profile.domains))

        session.state = IssuanceState.AUTHORIZING
        pending = []
        for authzr in session.authorizations:
            if authzr.body.status == messages.STATUS_VALID:
                logger.info("Authorization for %s is already valid", authzr.body.identifier.value)
                continue
            self._complete_authorization(authzr, session)
            pending.append(authzr)

        session.state = IssuanceState.VALIDATING
        if pending:
            polled = self._poll_authorizations(session, pending)
            self._check_authorizations(polled)

        session.state = IssuanceState.FINALIZING
        orderr = self._finalize_order(session)

        try:
            certificate = Certificate(orderr.fullchain_pem.encode('utf-8'))
        except X509Error as certificate_error:
            raise ACMEIssuedCertificateError('Received invalid PEM from ACME server') from certificate_error
        session.state = IssuanceState.DOWNLOADED
        logger.info("Received certificate: subject=%s, expires=%s, issuer=%s, SANs=%s",
                    certificate.certificate.subject.rfc4514_string(), certificate.not_valid_after,
                    certificate.certificate.issuer.rfc4514_string(),
                    ', '.join(certificate.subject_alternative_names))

        try:
            pfx = certificate.to_pkcs12(session.private_key, profile.pfx_password,
                                        friendly_name=profile.common_name)
        except X509Error as pkcs12_error:
            raise ACMEIssuedCertificateError('Unable to bundle the issued certificate') from pkcs12_error
        session.state = IssuanceState.DONE

        return pfx

    def _complete_authorization(self, authzr, session):
        domain = authzr.body.identifier.value
        for handler in self.challenge_handlers:
            session.check_deadline()
            challr = handler.try_complete(authzr, session, session.profile)
            if challr is not None:
                return challr

        raise AuthorizationUnsatisfiableError(domain)

    @staticmethod
    def _refresh_authorization(session, authzr):
        session.check_deadline()
        try:
            updated_authzr, _ = session.acme_client.poll(authzr)
        except errors.Error as poll_error:
            raise ACMEError('Unable to poll authorization for {}'.format(
                authzr.body.identifier.value)) from poll_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to poll authorization') from request_error

        return updated_authzr

    def _poll_authorizations(self, session, authorizations):
        """Refreshes authorizations concurrently until none of them is pending"""
        poll_deadline = datetime.now(timezone.utc) + timedelta(seconds=self.validation_timeout)
        attempts = 0
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            while True:
                authorizations = list(executor.map(lambda authzr: self._refresh_authorization(session, authzr),
                                                   authorizations))
                attempts += 1
                pending = [authzr.body.identifier.value for authzr in authorizations
                           if authzr.body.status == messages.STATUS_PENDING]
                if not pending:
                    return authorizations

                logger.debug("Authorizations still pending after %d attempts: %s", attempts, ', '.join(pending))
                if attempts >= self.max_poll_attempts or datetime.now(timezone.utc) >= poll_deadline:
                    raise ValidationTimeoutError('Authorizations still pending for {}'.format(', '.join(pending)))
                if session.cancel_event.wait(self.poll_interval):
                    raise ValidationTimeoutError('Issuance has been cancelled')

    @staticmethod
    def _check_authorizations(authorizations):
        failures = {}
        for authzr in authorizations:
            if authzr.body.status == messages.STATUS_VALID:
                continue
            details = []
            for challb in authzr.body.challenges:
                if challb.error is not None:
                    details.append(challb.error.detail or str(challb.error))
            if not details:
                details.append('authorization status {}'.format(authzr.body.status))
            failures[authzr.body.identifier.value] = details

        if failures:
            raise DomainValidationFailedError(failures)

    def _finalize_order(self, session):
        session.check_deadline()
        # using now() instead of utcnow() cause acme_client uses now()
        deadline = datetime.now() + timedelta(seconds=session.remaining_seconds(self.finalize_timeout))
        try:
            orderr = session.acme_client.finalize_order(session.order, deadline)
        except errors.TimeoutError as timeout_error:
            raise OrderFinalizationError('Timeout waiting for the ACME directory to finalize the order') \
                from timeout_error
        except errors.Error as finalize_error:
            raise OrderFinalizationError('Unable to finalize order {}'.format(session.order_id)) from finalize_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to finalize order') from request_error

        if orderr.body.status != messages.STATUS_VALID:
            raise OrderFinalizationError('Order {} finalized with status {}'.format(session.order_id,
                                                                                  orderr.body.status))
        session.order = orderr
        return orderr
