"""Encryption, normalization and masking of calendar feed URLs."""
import base64
import binascii
import hashlib
import logging
import os
import re
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from processor.errors import ConfigurationError, DecryptionError, ValidationError

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

ALLOWED_SCHEMES = ('webcal', 'webcals', 'http', 'https')
DEFAULT_PORTS = {'http': 80, 'https': 443}
GENERIC_MASK = 'https://.../****'

_HEX_KEY = re.compile(r'^[0-9a-fA-F]{64}$')


def decode_key(raw_key: str) -> bytes:
    """
    Decode an encryption key given as 64 hex chars or 44 base64 chars.

    Raises:
        ConfigurationError: If the key is missing or not 32 bytes
    """
    if not raw_key:
        raise ConfigurationError(
            'ENCRYPTION_KEY environment variable is required for feed URL encryption'
        )

    raw_key = raw_key.strip()
    if _HEX_KEY.match(raw_key):
        key = bytes.fromhex(raw_key)
    elif len(raw_key) == 44 and raw_key.endswith('='):
        try:
            key = base64.b64decode(raw_key, validate=True)
        except binascii.Error as e:
            raise ConfigurationError(f'ENCRYPTION_KEY is not valid base64: {e}')
    else:
        raise ConfigurationError(
            'ENCRYPTION_KEY must be 32 bytes (64 hex chars or 44 base64 chars)'
        )

    if len(key) != KEY_LENGTH:
        raise ConfigurationError(f'ENCRYPTION_KEY must be 32 bytes, got {len(key)}')
    return key


def validate_url(url: str) -> None:
    """
    Check that a string looks like a calendar subscription URL.

    Raises:
        ValidationError: For empty input, unsupported schemes or a missing host
    """
    if not url or not isinstance(url, str) or not url.strip():
        raise ValidationError('URL is required')

    scheme, _, _ = url.strip().partition('://')
    if scheme.lower() not in ALLOWED_SCHEMES:
        raise ValidationError('URL must start with webcal://, https://, or http://')

    normalize_url(url)


def normalize_url(url: str) -> str:
    """
    Canonicalize a feed URL before hashing or encrypting it.

    Lower-cases scheme and host, rewrites webcal to https, drops default
    ports, trailing slashes and fragments.

    Raises:
        ValidationError: If the URL has no host or an invalid port
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        raise ValidationError('Invalid URL format')
    scheme = parts.scheme.lower()
    if scheme in ('webcal', 'webcals'):
        scheme = 'https'

    host = parts.hostname
    if not host:
        raise ValidationError('Invalid URL format')
    try:
        port = parts.port
    except ValueError:
        raise ValidationError('Invalid URL port')

    if ':' in host:
        host = f'[{host}]'

    userinfo = ''
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo += f':{parts.password}'
        userinfo += '@'

    netloc = f'{userinfo}{host}'
    if port is not None and port != DEFAULT_PORTS.get(scheme):
        netloc += f':{port}'

    return urlunsplit((scheme, netloc, parts.path.rstrip('/'), parts.query, ''))


def hash_url(normalized_url: str) -> str:
    """One-way SHA-256 of a normalized URL, used for duplicate detection."""
    return hashlib.sha256(normalized_url.encode('utf-8')).hexdigest()


def mask_url(url: str) -> str:
    """
    Mask a feed URL for display or logging.

    Keeps scheme and host; path, query and embedded credentials are redacted.
    """
    try:
        parts = urlsplit(normalize_url(url))
    except (ValidationError, ValueError):
        return GENERIC_MASK

    host = parts.hostname
    if ':' in host:
        host = f'[{host}]'

    masked = f'{parts.scheme}://{host}'
    if parts.path or parts.query:
        masked += '/.../****'
    return masked


class CredentialVault:
    """AES-256-GCM protection for feed URLs at rest."""

    normalize = staticmethod(normalize_url)
    validate = staticmethod(validate_url)
    hash = staticmethod(hash_url)
    mask = staticmethod(mask_url)

    def __init__(self, key: Optional[str]):
        """
        Initialize the vault with process-wide key material.

        Args:
            key: 32-byte key as 64 hex or 44 base64 characters

        Raises:
            ConfigurationError: If the key is absent or malformed
        """
        self._aesgcm = AESGCM(decode_key(key))

    def encrypt(self, plaintext_url: str) -> str:
        """Encrypt a URL; returns base64(nonce + ciphertext + tag)."""
        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext_url.encode('utf-8'), None)
        return base64.b64encode(nonce + ciphertext).decode('ascii')

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a value produced by encrypt().

        Raises:
            DecryptionError: On corrupt data or a rotated key
        """
        try:
            combined = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError, TypeError):
            raise DecryptionError()

        if len(combined) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionError()

        nonce, payload = combined[:NONCE_LENGTH], combined[NONCE_LENGTH:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, payload, None)
        except InvalidTag:
            logger.error('Feed URL decryption failed: authentication tag mismatch')
            raise DecryptionError()
        return plaintext.decode('utf-8')
