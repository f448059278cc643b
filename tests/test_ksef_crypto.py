import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from core.exceptions import EncryptionError
from core.ksef_crypto import SCHEME_OAEP_SHA256, encrypt_token, load_public_key, max_plaintext_bytes


def test_encrypt_token_recovers_secret_and_timestamp(public_key_pem, decrypt_pkcs1):
    ciphertext = encrypt_token("my-secret-token", "2024-01-15T10:00:00.000Z", public_key_pem)
    assert decrypt_pkcs1(ciphertext) == "my-secret-token|2024-01-15T10:00:00.000Z"


def test_encrypt_token_is_randomized_by_padding(public_key_pem, decrypt_pkcs1):
    a = encrypt_token("s", "1", public_key_pem)
    b = encrypt_token("s", "1", public_key_pem)
    assert a != b
    assert decrypt_pkcs1(a) == decrypt_pkcs1(b) == "s|1"


def test_encrypt_token_oaep_scheme(public_key_pem, decrypt_oaep):
    ciphertext = encrypt_token("tok", 1705312800000, public_key_pem, scheme=SCHEME_OAEP_SHA256)
    assert decrypt_oaep(ciphertext) == "tok|1705312800000"


def test_load_public_key_accepts_certificates(certificate, certificate_der_b64, rsa_private_key):
    expected = rsa_private_key.public_key().public_numbers()
    pem = certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")
    assert load_public_key(pem).public_numbers() == expected
    assert load_public_key(certificate_der_b64).public_numbers() == expected


@pytest.mark.parametrize("bad", ["", "-----BEGIN PUBLIC KEY-----\nnot-a-key\n-----END PUBLIC KEY-----", "bm90IGEga2V5"])
def test_malformed_key_raises_encryption_error(bad):
    with pytest.raises(EncryptionError):
        encrypt_token("secret", "ts", bad)


def test_non_rsa_key_is_rejected():
    ec_pem = ec.generate_private_key(ec.SECP256R1()).public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    with pytest.raises(EncryptionError, match="RSA required"):
        encrypt_token("secret", "ts", ec_pem)


def test_plaintext_longer_than_modulus_is_rejected(public_key_pem):
    key = load_public_key(public_key_pem)
    limit = max_plaintext_bytes(key)
    assert limit == 2048 // 8 - 11

    with pytest.raises(EncryptionError, match="too long"):
        encrypt_token("x" * limit, "ts", public_key_pem)
    # exactly at the limit still works: "x" * (limit - 3) + "|ts"
    encrypt_token("x" * (limit - 3), "ts", public_key_pem)


def test_unknown_scheme():
    with pytest.raises(EncryptionError):
        encrypt_token("s", "t", "irrelevant", scheme="rot13")
