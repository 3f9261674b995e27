"""
Module containing the ACME account key cache.

One cached blob per ACME server alias, stored as JSON: {"key": <PEM>, "timestamp": <ISO 8601>}
The blob storage is pluggable, any object implementing read(alias) and write(alias, data) works:
    - FileKeyCacheStorage: one file per alias
    - SecretStoreKeyCacheStorage: one secret per alias in a secret store vault
"""
import json
import logging
import os
from datetime import datetime, timedelta, timezone

from acme_renewer.secret_store import VALID_NAME, SecretStoreError
from acme_renewer.x509 import X509Error, load_private_key, secure_opener

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

DEFAULT_TTL_HOURS = 720


class FileKeyCacheStorage:
    """Stores every cached key blob as <directory>/<alias>.json"""
    def __init__(self, directory):
        self.directory = os.path.expandvars(os.path.expanduser(directory))

    def _get_path(self, alias):
        if not VALID_NAME.match(alias):
            raise ValueError('Invalid ACME server alias: {}'.format(alias))
        return os.path.join(self.directory, '{}.json'.format(alias))

    def read(self, alias):
        """Returns the blob cached for alias or None"""
        path = self._get_path(alias)
        if not os.path.isfile(path):
            return None

        logger.info("Reading account key from file: %s", path)
        with open(path, 'r', encoding='utf-8') as cache_file:
            return cache_file.read()

    def write(self, alias, data):
        """Persists the blob for alias"""
        path = self._get_path(alias)
        logger.info("Saving account key to file: %s", path)
        os.makedirs(self.directory, mode=0o700, exist_ok=True)
        with open(path, 'w', encoding='utf-8', opener=secure_opener) as cache_file:
            cache_file.write(data)


class SecretStoreKeyCacheStorage:
    """Stores every cached key blob as the secret <secret_name>-<alias> in a secret store vault"""
    def __init__(self, secret_store, vault_uri, secret_name):
        self.secret_store = secret_store
        self.vault_uri = vault_uri
        self.secret_name = secret_name

    def _get_secret_name(self, alias):
        return '{}-{}'.format(self.secret_name, alias)

    def read(self, alias):
        """Returns the blob cached for alias or None"""
        secret_name = self._get_secret_name(alias)
        logger.info("Reading account key from the vault: name=%s, vault=%s", secret_name, self.vault_uri)
        return self.secret_store.get_secret(secret_name, self.vault_uri)

    def write(self, alias, data):
        """Persists the blob for alias"""
        secret_name = self._get_secret_name(alias)
        logger.info("Saving account key to the vault: name=%s, vault=%s", secret_name, self.vault_uri)
        self.secret_store.set_secret(secret_name, data, self.vault_uri)


class AccountKeyCache:
    """ACME account private keys cached per ACME server alias with a freshness window"""
    def __init__(self, storage, ttl_hours=DEFAULT_TTL_HOURS):
        self.storage = storage
        self.ttl = timedelta(hours=ttl_hours)

    @staticmethod
    def _parse(content):
        cached_data = json.loads(content)
        timestamp = datetime.fromisoformat(cached_data['timestamp'])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cached_data['key'], timestamp

    def save_account_key(self, key, alias):
        """Caches key for alias. Saving the key that is already cached is a no-op"""
        pem_key = key.private_pem.decode('ascii')

        try:
            old_content = self.storage.read(alias)
        except (OSError, SecretStoreError):
            logger.exception("Unable to read the cached account key for %s, overwriting it", alias)
            old_content = None

        if old_content:
            try:
                cached_key, _ = self._parse(old_content)
                if cached_key == pem_key:
                    return
            except (KeyError, TypeError, ValueError):
                logger.warning("Ignoring corrupted account key cache for %s", alias)

        content = json.dumps({
            'key': pem_key,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        })
        self.storage.write(alias, content)

    def get_account_key(self, alias):
        """Returns the cached key for alias or None if it's missing, stale or unreadable"""
        try:
            content = self.storage.read(alias)
            if not content or not content.strip():
                return None

            cached_key, timestamp = self._parse(content)
            age = datetime.now(timezone.utc) - timestamp
            if age > self.ttl:
                logger.info("Cached account key for %s is %s old, ignoring it", alias, age)
                return None

            return load_private_key(cached_key)
        except (OSError, SecretStoreError, KeyError, TypeError, ValueError, X509Error):
            logger.exception("Error loading the account key cache for %s", alias)
            return None
