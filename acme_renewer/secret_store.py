"""
Module containing the secret store contract and its file backed implementation.

Certificates and secrets are addressed by name inside a vault identified by its URI.
"""
import abc
import logging
import os
import re
from urllib.parse import unquote, urlparse

from acme_renewer.x509 import Certificate, X509Error, secure_opener

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

VALID_NAME = re.compile(r'^[0-9A-Za-z][0-9A-Za-z._-]*$')


class SecretStoreError(Exception):
    """Unable to reach or use the secret store"""


class CertificateRecord:
    """Read-only projection of a certificate stored in a secret store"""
    def __init__(self, *, name, subject, issuer, expires, not_before, thumbprint, serial_number=None,
                 key_size=None, key_usage=(), subject_alternative_names=()):
        self.name = name
        self.subject = subject
        self.issuer = issuer
        self.expires = expires
        self.not_before = not_before
        self.thumbprint = thumbprint
        self.serial_number = serial_number
        self.key_size = key_size
        self.key_usage = list(key_usage)
        self.subject_alternative_names = list(subject_alternative_names)

    @classmethod
    def from_certificate(cls, name, certificate):
        """Builds a CertificateRecord out of a x509.Certificate instance"""
        crypto_cert = certificate.certificate
        return cls(
            name=name,
            subject=crypto_cert.subject.rfc4514_string(),
            issuer=crypto_cert.issuer.rfc4514_string(),
            expires=crypto_cert.not_valid_after_utc,
            not_before=crypto_cert.not_valid_before_utc,
            thumbprint=certificate.thumbprint,
            serial_number='{:x}'.format(crypto_cert.serial_number),
            key_size=certificate.key_size,
            key_usage=certificate.key_usage,
            subject_alternative_names=certificate.subject_alternative_names,
        )

    def to_dict(self):
        """JSON friendly representation"""
        return {
            'name': self.name,
            'subject': self.subject,
            'issuer': self.issuer,
            'expires': self.expires.isoformat(),
            'not_before': self.not_before.isoformat() if self.not_before else None,
            'thumbprint': self.thumbprint,
            'serial_number': self.serial_number,
            'key_size': self.key_size,
            'key_usage': self.key_usage,
            'subject_alternative_names': self.subject_alternative_names,
        }

    def __repr__(self):
        return 'CertificateRecord(name={!r}, subject={!r}, expires={})'.format(self.name, self.subject,
                                                                               self.expires.isoformat())


class SecretStoreClient(abc.ABC):
    """Operations required from a secret store"""

    @abc.abstractmethod
    def get_certificate(self, name, vault_uri):
        """Returns the CertificateRecord stored as name or None if it doesn't exist"""

    @abc.abstractmethod
    def import_certificate(self, name, vault_uri, pfx, password):
        """Imports a password protected PKCS#12 blob as certificate name"""

    @abc.abstractmethod
    def get_secret(self, name, vault_uri):
        """Returns the value of the secret name or None if it doesn't exist"""

    @abc.abstractmethod
    def set_secret(self, name, value, vault_uri):
        """Creates or replaces the secret name"""


class FileSecretStore(SecretStoreClient):
    """
    Secret store backed by a local directory. Vault URIs must use the file scheme,
    e.g. file:///var/lib/acme-renewer/vault. Layout:
        <vault>/certificates/<name>.crt  certificate + chain
        <vault>/certificates/<name>.key  private key
        <vault>/secrets/<name>
    """
    certificates_path = 'certificates'
    secrets_path = 'secrets'

    @staticmethod
    def _get_vault_path(vault_uri):
        parsed_uri = urlparse(str(vault_uri))
        if parsed_uri.scheme != 'file' or not parsed_uri.path:
            raise SecretStoreError('Unsupported vault URI for the file secret store: {}'.format(vault_uri))

        return unquote(parsed_uri.path)

    def _get_path(self, vault_uri, kind, file_name, create_directory=False):
        if not VALID_NAME.match(file_name):
            raise SecretStoreError('Invalid object name: {}'.format(file_name))

        directory_name = os.path.join(self._get_vault_path(vault_uri), kind)
        if create_directory:
            try:
                os.makedirs(directory_name, mode=0o750, exist_ok=True)
            except OSError as os_error:
                raise SecretStoreError('Unable to create {}'.format(directory_name)) from os_error

        return os.path.join(directory_name, file_name)

    def get_certificate(self, name, vault_uri):
        path = self._get_path(vault_uri, FileSecretStore.certificates_path, '{}.crt'.format(name))
        try:
            certificate = Certificate.load(path)
        except FileNotFoundError:
            logger.warning("Certificate %s not found!", name)
            return None
        except (OSError, X509Error) as load_error:
            raise SecretStoreError('Unable to read certificate {}'.format(name)) from load_error

        record = CertificateRecord.from_certificate(name, certificate)
        logger.info("Found certificate %s, expires: %s, thumbprint: %s", name, record.expires, record.thumbprint)
        return record

    def import_certificate(self, name, vault_uri, pfx, password):
        try:
            certificate, private_key = Certificate.from_pkcs12(pfx, password)
        except X509Error as pkcs12_error:
            raise SecretStoreError('Unable to import certificate {}'.format(name)) from pkcs12_error

        logger.info("Upload the certificate to the vault: vault=%s, name=%s", vault_uri, name)
        cert_path = self._get_path(vault_uri, FileSecretStore.certificates_path, '{}.crt'.format(name),
                                   create_directory=True)
        key_path = self._get_path(vault_uri, FileSecretStore.certificates_path, '{}.key'.format(name))
        try:
            # key first, a reader never sees a certificate without its key
            private_key.save(key_path)
            with open(cert_path, 'wb') as cert_file:
                cert_file.write(certificate.fullchain_pem)
        except OSError as os_error:
            raise SecretStoreError('Unable to persist certificate {}'.format(name)) from os_error

    def get_secret(self, name, vault_uri):
        path = self._get_path(vault_uri, FileSecretStore.secrets_path, name)
        try:
            with open(path, 'r', encoding='utf-8') as secret_file:
                return secret_file.read()
        except FileNotFoundError:
            logger.warning("Secret %s not found!", name)
            return None
        except OSError as os_error:
            raise SecretStoreError('Unable to read secret {}'.format(name)) from os_error

    def set_secret(self, name, value, vault_uri):
        path = self._get_path(vault_uri, FileSecretStore.secrets_path, name, create_directory=True)
        logger.info("Save secret to the vault: vault=%s, name=%s", vault_uri, name)
        try:
            with open(path, 'w', encoding='utf-8', opener=secure_opener) as secret_file:
                secret_file.write(value)
        except OSError as os_error:
            raise SecretStoreError('Unable to write secret {}'.format(name)) from os_error


SECRET_STORES = {
    'file': FileSecretStore,
}
