import base64
import datetime as dt
import json

import pytest
import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID
from requests.structures import CaseInsensitiveDict


def make_response(status=200, body=None, *, text=None, content_type="application/json"):
    r = requests.Response()
    r.status_code = status
    if body is not None:
        r._content = json.dumps(body).encode("utf-8")
    else:
        r._content = (text or "").encode("utf-8")
    r.headers["Content-Type"] = content_type
    r.encoding = "utf-8"
    return r


class FakeSession:
    """Stand-in for requests.Session: routes by URL suffix, records every call."""

    def __init__(self):
        self.headers = CaseInsensitiveDict()
        self.proxies = {}
        self.calls = []
        self._routes = {}
        self.closed = False

    def add(self, method, path, *responses):
        """Queue responses (Response, Exception, or callable(call) -> Response). The last one repeats."""
        self._routes.setdefault((method, path), []).extend(responses)
        return self

    def request(self, method, url, params=None, json=None, data=None, headers=None, timeout=None):
        call = {
            "method": method,
            "url": url,
            "params": dict(params or {}),
            "json": json,
            "data": data,
            "headers": {**dict(self.headers), **dict(headers or {})},
            "timeout": timeout,
        }
        self.calls.append(call)
        for (m, path), queue in self._routes.items():
            if m == method and url.endswith(path) and queue:
                item = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(item, Exception):
                    raise item
                if callable(item):
                    return item(call)
                return item
        raise AssertionError(f"Unexpected request {method} {url}")

    def close(self):
        self.closed = True

    def calls_to(self, path):
        return [c for c in self.calls if c["url"].endswith(path)]


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def public_key_pem(rsa_private_key):
    return rsa_private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


@pytest.fixture(scope="session")
def certificate(rsa_private_key):
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "KSeF test")])
    now = dt.datetime.now(dt.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(rsa_private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(days=1))
        .not_valid_after(now + dt.timedelta(days=30))
        .sign(rsa_private_key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def certificate_der_b64(certificate):
    return base64.b64encode(certificate.public_bytes(serialization.Encoding.DER)).decode("ascii")


@pytest.fixture
def decrypt_pkcs1(rsa_private_key):
    def _decrypt(b64):
        return rsa_private_key.decrypt(base64.b64decode(b64), padding.PKCS1v15()).decode("utf-8")
    return _decrypt


@pytest.fixture
def decrypt_oaep(rsa_private_key):
    def _decrypt(b64):
        pad = padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)
        return rsa_private_key.decrypt(base64.b64decode(b64), pad).decode("utf-8")
    return _decrypt


@pytest.fixture(autouse=True)
def _no_ksef_env(monkeypatch):
    for var in ("KSEF_NIP", "KSEF_TOKEN", "KSEF_ENV", "KSEF_PROTOCOL_VERSION", "KSEF_PUBLIC_KEY", "KSEF_PROXY"):
        monkeypatch.delenv(var, raising=False)
