"""
Encryption of the KSeF authorization token for the challenge-response login.

The server expects ``base64(RSA(token + "|" + challenge_timestamp))`` with the
environment's public key and PKCS#1 v1.5 padding. OAEP with SHA-256 is only
used when explicitly requested through ``scheme``.
"""

from __future__ import annotations

import base64
import binascii
from typing import Union

from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from core.exceptions import EncryptionError

SCHEME_PKCS1V15 = "pkcs1v15"
SCHEME_OAEP_SHA256 = "oaep-sha256"

# PKCS#1 v1.5 needs 11 bytes of padding; OAEP-SHA256 needs 2 * 32 + 2.
_PADDING_OVERHEAD = {
    SCHEME_PKCS1V15: 11,
    SCHEME_OAEP_SHA256: 66,
}

PublicKeyInput = Union[str, bytes, rsa.RSAPublicKey]


def load_public_key(key: PublicKeyInput) -> rsa.RSAPublicKey:
    """
    Load an RSA public key from PEM text (public key or X.509 certificate)
    or from a bare base64 DER certificate as published by the v2 API.
    """
    if isinstance(key, rsa.RSAPublicKey):
        return key
    data = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    data = data.strip()
    if not data:
        raise EncryptionError("Empty public key")

    try:
        if b"-----BEGIN CERTIFICATE-----" in data:
            loaded = x509.load_pem_x509_certificate(data, default_backend()).public_key()
        elif b"-----BEGIN" in data:
            loaded = serialization.load_pem_public_key(data, default_backend())
        else:
            der = base64.b64decode(data, validate=False)
            try:
                loaded = x509.load_der_x509_certificate(der, default_backend()).public_key()
            except ValueError:
                loaded = serialization.load_der_public_key(der, default_backend())
    except (ValueError, TypeError, binascii.Error) as exc:
        raise EncryptionError(f"Malformed public key: {exc}") from exc

    if not isinstance(loaded, rsa.RSAPublicKey):
        raise EncryptionError(f"Unsupported public key type: {type(loaded).__name__} (RSA required)")
    return loaded


def max_plaintext_bytes(public_key: rsa.RSAPublicKey, scheme: str = SCHEME_PKCS1V15) -> int:
    return public_key.key_size // 8 - _PADDING_OVERHEAD[scheme]


def encrypt_token(
    secret: str,
    challenge_timestamp: Union[str, int],
    public_key: PublicKeyInput,
    scheme: str = SCHEME_PKCS1V15,
) -> str:
    """
    Encrypt ``secret|challenge_timestamp`` and return the ciphertext as base64 text.

    Raises:
        EncryptionError: bad key material, unknown scheme, or plaintext too
            long for the key's modulus.
    """
    if scheme not in _PADDING_OVERHEAD:
        raise EncryptionError(f"Unknown padding scheme: {scheme}")

    key = load_public_key(public_key)
    plaintext = f"{secret}|{challenge_timestamp}".encode("utf-8")

    limit = max_plaintext_bytes(key, scheme)
    if len(plaintext) > limit:
        raise EncryptionError(
            f"Token too long for a {key.key_size}-bit key: {len(plaintext)} bytes (max {limit})"
        )

    if scheme == SCHEME_PKCS1V15:
        pad = padding.PKCS1v15()
    else:
        pad = padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)

    try:
        ciphertext = key.encrypt(plaintext, pad)
    except ValueError as exc:
        raise EncryptionError(f"RSA encryption failed: {exc}") from exc
    return base64.b64encode(ciphertext).decode("ascii")
