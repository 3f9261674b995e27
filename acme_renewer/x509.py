"""
Module containing the X.509 pieces of the renewal: certificate private keys, CSRs,
issued certificate chains and their PKCS#12 bundles
"""
import abc
import os

from cryptography import x509 as crypto_x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

DEFAULT_RSA_KEY_SIZE = 2048
DEFAULT_RSA_PUBLIC_EXPONENT = 65537
DEFAULT_SIGNATURE_ALGORITHM = hashes.SHA256()
DEFAULT_EC_CURVE = ec.SECP256R1  # pylint: disable=invalid-name
OPENER_MODE = 0o640
KEY_USAGE_FLAGS = ('digital_signature', 'content_commitment', 'key_encipherment', 'data_encipherment',
                   'key_agreement', 'key_cert_sign', 'crl_sign')


class X509Error(Exception):
    """Base exception class for the X509 module"""


def secure_opener(path, flags):
    """
    custom opener to be used with open(file, mode, opener=secure_opener).
    Ensures that newly created files are created with OPENER_MODE permissions
    """
    return os.open(path, flags, OPENER_MODE)


class PrivateKey(abc.ABC):
    """Wrapper around a cryptography private key. Subclasses implement generate(**kwargs)"""
    def __init__(self, private_key=None):
        self.key = private_key

    @abc.abstractmethod
    def generate(self, **kwargs):
        """Generates a new private key"""

    @property
    def private_pem(self):
        """Unencrypted PEM of the private key"""
        return self.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def save(self, filename):
        """Writes the private key PEM to filename, readable only by owner and group"""
        with open(filename, 'wb', opener=secure_opener) as key_file:
            key_file.write(self.private_pem)


class RSAPrivateKey(PrivateKey):
    """RSA private key, used for certificates and ACME accounts"""
    def generate(self, **kwargs):
        """Supported parameters: size (default DEFAULT_RSA_KEY_SIZE)"""
        self.key = rsa.generate_private_key(
            public_exponent=DEFAULT_RSA_PUBLIC_EXPONENT,
            key_size=kwargs.get('size', DEFAULT_RSA_KEY_SIZE),
        )


class ECPrivateKey(PrivateKey):
    """Elliptic curve private key"""
    def generate(self, **kwargs):
        """Supported parameters: curve, an EllipticCurve class (default DEFAULT_EC_CURVE)"""
        curve = kwargs.get('curve', DEFAULT_EC_CURVE)
        self.key = ec.generate_private_key(curve=curve())


KEY_TYPES = {
    'ec-prime256v1': {
        'class': ECPrivateKey,
        'params': {
            'curve': ec.SECP256R1,
        }
    },
    'ec-secp384r1': {
        'class': ECPrivateKey,
        'params': {
            'curve': ec.SECP384R1,
        }
    },
    'rsa-2048': {
        'class': RSAPrivateKey,
        'params': {
            'size': 2048,
        }
    },
    'rsa-4096': {
        'class': RSAPrivateKey,
        'params': {
            'size': 4096,
        }
    },
}
DEFAULT_KEY_TYPE = 'rsa-2048'


def generate_private_key(key_type_id=DEFAULT_KEY_TYPE):
    """Generates a new private key of the requested KEY_TYPES entry"""
    key_type_details = KEY_TYPES[key_type_id]
    private_key = key_type_details['class']()
    private_key.generate(**key_type_details['params'])
    return private_key


def wrap_private_key(private_key):
    """Wraps a cryptography private key on the matching PrivateKey subclass"""
    if isinstance(private_key, rsa.RSAPrivateKey):
        return RSAPrivateKey(private_key=private_key)
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return ECPrivateKey(private_key=private_key)
    raise X509Error('Unsupported private key type: {}'.format(type(private_key).__name__))


def load_private_key(pem):
    """Loads a private key from an unencrypted PEM (str or bytes)"""
    if isinstance(pem, str):
        pem = pem.encode('ascii')

    try:
        private_key = serialization.load_pem_private_key(pem, password=None)
    except (TypeError, ValueError) as load_error:
        raise X509Error('Unable to parse private key PEM') from load_error

    return wrap_private_key(private_key)


class CertificateSigningRequest:
    """
    CSR for a list of domains signed with private_key.
    The first domain is used as common name and every domain is added as a DNS SAN
    """
    def __init__(self, private_key, domains):
        if not isinstance(private_key, PrivateKey):
            raise TypeError("private_key must be either a RSAPrivateKey or ECPrivateKey instance")
        if not isinstance(domains, (list, tuple)) or not domains:
            raise TypeError("domains must be a non empty tuple or list")

        self.private_key = private_key
        self.domains = list(domains)
        builder = crypto_x509.CertificateSigningRequestBuilder()
        builder = builder.subject_name(crypto_x509.Name([
            crypto_x509.NameAttribute(NameOID.COMMON_NAME, self.domains[0]),
        ]))
        builder = builder.add_extension(
            crypto_x509.SubjectAlternativeName([crypto_x509.DNSName(domain) for domain in self.domains]),
            critical=False,
        )
        self.request = builder.sign(private_key=private_key.key, algorithm=DEFAULT_SIGNATURE_ALGORITHM)

    @property
    def pem(self):
        """Signed CSR serialized as PEM"""
        return self.request.public_bytes(encoding=serialization.Encoding.PEM)


class Certificate:
    """Leaf certificate followed by its chain, as issued by the ACME directory"""
    def __init__(self, pem):
        try:
            self.chain = crypto_x509.load_pem_x509_certificates(pem)
        except (TypeError, ValueError) as load_pem_error:
            raise X509Error('Unable to parse PEM') from load_pem_error

        self.certificate = self.chain[0]

    @staticmethod
    def load(path):
        """Loads the certificate chain from a PEM on disk"""
        with open(path, 'rb') as pem_file:
            return Certificate(pem_file.read())

    @property
    def pem(self):
        """Leaf certificate serialized as PEM"""
        return self.certificate.public_bytes(encoding=serialization.Encoding.PEM)

    @property
    def fullchain_pem(self):
        """Leaf certificate followed by its chain serialized as PEM"""
        return b''.join(cert.public_bytes(encoding=serialization.Encoding.PEM) for cert in self.chain)

    @property
    def common_name(self):
        """Gets the Common Name (CN) of this certificate"""
        name_attrs = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if len(name_attrs) != 1:
            raise X509Error('Unexpected number of common name attributes: {}'.format(len(name_attrs)))

        return name_attrs[0].value

    @property
    def not_valid_after(self):
        """Expiration date as an aware UTC datetime"""
        return self.certificate.not_valid_after_utc

    @property
    def thumbprint(self):
        """SHA-1 fingerprint of the DER encoded certificate as an uppercase hex string"""
        return self.certificate.fingerprint(hashes.SHA1()).hex().upper()

    @property
    def key_size(self):
        """Size in bits of the certificate public key"""
        return self.certificate.public_key().key_size

    @property
    def key_usage(self):
        """Key usage flags enabled on this certificate"""
        try:
            usage = self.certificate.extensions.get_extension_for_class(crypto_x509.KeyUsage).value
        except crypto_x509.ExtensionNotFound:
            return []

        ret = [flag for flag in KEY_USAGE_FLAGS if getattr(usage, flag)]
        # encipher_only and decipher_only are undefined unless key_agreement is set
        if usage.key_agreement:
            ret.extend(flag for flag in ('encipher_only', 'decipher_only') if getattr(usage, flag))

        return ret

    @property
    def subject_alternative_names(self):
        """Gets the subject alternative names in this certificate, as a list of strings"""
        try:
            san_ext = self.certificate.extensions.get_extension_for_class(crypto_x509.SubjectAlternativeName)
        except crypto_x509.ExtensionNotFound:  # no SANs
            return []
        return [str(v.value) for v in san_ext.value]

    def to_pkcs12(self, private_key, password, friendly_name=None):
        """Bundles the certificate, its chain and private_key on a password protected PKCS#12 blob"""
        if not isinstance(private_key, PrivateKey):
            raise TypeError("private_key must be either a RSAPrivateKey or ECPrivateKey instance")
        if friendly_name is None:
            friendly_name = self.common_name

        try:
            return pkcs12.serialize_key_and_certificates(
                name=friendly_name.encode('utf-8'),
                key=private_key.key,
                cert=self.certificate,
                cas=self.chain[1:] or None,
                encryption_algorithm=serialization.BestAvailableEncryption(password.encode('utf-8')),
            )
        except (TypeError, ValueError) as pkcs12_error:
            raise X509Error('Unable to build PKCS#12 bundle') from pkcs12_error

    @staticmethod
    def from_pkcs12(data, password):
        """Loads a PKCS#12 blob. Returns a (Certificate, PrivateKey) tuple"""
        try:
            key, cert, additional_certs = pkcs12.load_key_and_certificates(data, password.encode('utf-8'))
        except (TypeError, ValueError) as pkcs12_error:
            raise X509Error('Unable to load PKCS#12 bundle') from pkcs12_error

        if cert is None or key is None:
            raise X509Error('PKCS#12 bundle does not contain a certificate and its private key')

        pem = b''.join(c.public_bytes(encoding=serialization.Encoding.PEM) for c in [cert] + list(additional_certs))
        return Certificate(pem), wrap_private_key(key)
