"""
onionrelay.crypto - Key Manager for onion layers.

RSA-OAEP (SHA-256) wraps the per-layer symmetric key; AES-256-CBC with a
random IV prepended to the ciphertext protects the bulk payload. Keys travel
between nodes as base64 text:

- public keys:  DER SubjectPublicKeyInfo
- private keys: DER PKCS8 (debug export only)
- symmetric:    raw 32 bytes
"""

import base64
import binascii
import logging
import os

from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .robustness import DecryptionError, KeyFormatError, handle_exception

logger = logging.getLogger(__name__)

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
SYM_KEY_LENGTH = 32
IV_LENGTH = 16
BLOCK_SIZE_BITS = 128


def _oaep() -> asym_padding.OAEP:
    return asym_padding.OAEP(
        mgf=asym_padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """Strict base64 decoding; raises ValueError on anything malformed."""
    if not isinstance(text, str):
        raise ValueError(f"expected base64 text, got {type(text).__name__}")
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64: {e}") from e


# ----- RSA keys -----


def generate_rsa_key_pair() -> tuple[rsa.RSAPublicKey, rsa.RSAPrivateKey]:
    """Generate a fresh RSA key pair sized for OAEP key wrapping."""
    private_key = rsa.generate_private_key(
        public_exponent=RSA_PUBLIC_EXPONENT,
        key_size=RSA_KEY_SIZE,
    )
    return private_key.public_key(), private_key


def export_pub_key(key: rsa.RSAPublicKey) -> str:
    der = key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return b64encode(der)


def export_prv_key(key: rsa.RSAPrivateKey | None) -> str | None:
    if key is None:
        return None
    der = key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return b64encode(der)


def _check_rsa(key, expected_type) -> None:
    if not isinstance(key, expected_type):
        raise KeyFormatError(f"expected an RSA key, got {type(key).__name__}")
    if key.key_size < RSA_KEY_SIZE:
        raise KeyFormatError(f"RSA key too small: {key.key_size} bits")


@handle_exception(error_cls=KeyFormatError)
def import_pub_key(text: str) -> rsa.RSAPublicKey:
    key = serialization.load_der_public_key(b64decode(text))
    _check_rsa(key, rsa.RSAPublicKey)
    return key


@handle_exception(error_cls=KeyFormatError)
def import_prv_key(text: str) -> rsa.RSAPrivateKey:
    key = serialization.load_der_private_key(b64decode(text), password=None)
    _check_rsa(key, rsa.RSAPrivateKey)
    return key


def rsa_encrypt(data: bytes, public_key: rsa.RSAPublicKey) -> bytes:
    """Encrypt a short secret (a symmetric key) under ``public_key``."""
    return public_key.encrypt(data, _oaep())


@handle_exception(error_cls=DecryptionError)
def rsa_decrypt(data: bytes, private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.decrypt(data, _oaep())


# ----- symmetric keys -----


def create_random_symmetric_key() -> bytes:
    return os.urandom(SYM_KEY_LENGTH)


def export_sym_key(key: bytes) -> str:
    return b64encode(key)


@handle_exception(error_cls=KeyFormatError)
def import_sym_key(text: str) -> bytes:
    key = b64decode(text)
    if len(key) != SYM_KEY_LENGTH:
        raise KeyFormatError(f"symmetric key must be {SYM_KEY_LENGTH} bytes, got {len(key)}")
    return key


def sym_encrypt(key: bytes, data: bytes) -> bytes:
    """
    Encrypt ``data`` with AES-256-CBC.

    A fresh IV is drawn for every call and prepended, so the result is
    ``IV || ciphertext`` and decrypts with the key alone.
    """
    iv = os.urandom(IV_LENGTH)
    padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return iv + encryptor.update(padded) + encryptor.finalize()


@handle_exception(error_cls=DecryptionError)
def sym_decrypt(key: bytes, blob: bytes) -> bytes:
    if len(blob) < IV_LENGTH + IV_LENGTH or (len(blob) - IV_LENGTH) % IV_LENGTH:
        raise DecryptionError(f"ciphertext has invalid length {len(blob)}")
    iv, ciphertext = blob[:IV_LENGTH], blob[IV_LENGTH:]
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
    return unpadder.update(padded) + unpadder.finalize()
