import textwrap
import xml.etree.ElementTree as ET

import pytest

from conftest import make_response
from core.config import load_config
from core.exceptions import ConfigError
from core.ksef_client import NS_TYPES, create_client
from core.ksef_models import Environment, ProtocolVersion


def write_ini(tmp_path, body):
    path = tmp_path / "ksef.ini"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def test_ini_values_and_relative_paths(tmp_path, public_key_pem):
    (tmp_path / "keys").mkdir()
    (tmp_path / "keys" / "ksef.pem").write_text(public_key_pem, encoding="utf-8")
    path = write_ini(tmp_path, """
        [ksef]
        environment = prod
        protocol_version = v1
        nip = 5260250274
        token = abc%def
        public_key = keys/ksef.pem
        page_size = 50

        [http]
        timeout_sec = 60
        proxy = http://proxy.local:3128
        user_agent = bwb-sync/2.0

        [http_headers]
        X-Client-Name = bwb

        [storage]
        backend = sqlite
        sqlite_path = data/ksef.db

        [logging]
        log_file = logs/sync.log
    """)

    cfg = load_config(path, environ={})

    assert cfg.environment is Environment.PRODUCTION
    assert cfg.protocol_version is ProtocolVersion.V1
    assert cfg.credential.tax_id == "5260250274"
    assert cfg.credential.secret == "abc%def"
    assert cfg.public_key == public_key_pem.strip()
    assert cfg.page_size == 50
    assert cfg.timeout_sec == 60
    assert cfg.proxy == "http://proxy.local:3128"
    assert cfg.headers == {"User-Agent": "bwb-sync/2.0", "X-Client-Name": "bwb"}
    assert cfg.storage_backend == "sqlite"
    assert cfg.sqlite_path == (tmp_path / "data" / "ksef.db").resolve()
    assert cfg.log_file == (tmp_path / "logs" / "sync.log").resolve()
    assert "auth_poll_attempts" not in cfg.client_kwargs()


def test_environment_variables_override_ini(tmp_path):
    path = write_ini(tmp_path, """
        [ksef]
        environment = test
        nip = 1111111111
        token = from-ini
    """)

    cfg = load_config(path, environ={"KSEF_NIP": "5260250274", "KSEF_TOKEN": "from-env", "KSEF_ENV": "DEMO",
                                     "KSEF_PROXY": "http://env-proxy:8080"})

    assert cfg.nip == "5260250274"
    assert cfg.token == "from-env"
    assert cfg.environment is Environment.DEMO
    assert cfg.proxy == "http://env-proxy:8080"


def test_environment_only_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    cfg = load_config(environ={"KSEF_NIP": "5260250274", "KSEF_TOKEN": "t"})

    assert cfg.environment is Environment.TEST
    assert cfg.protocol_version is ProtocolVersion.V1
    assert cfg.token_padding == "pkcs1v15"
    assert cfg.storage_backend == "excel"
    assert cfg.excel_path == (tmp_path / "ksef_invoices.xlsx").resolve()
    assert cfg.public_key is None
    assert cfg.client_kwargs()["padding_scheme"] == "pkcs1v15"
    assert "auth_poll_attempts" not in cfg.client_kwargs()


def test_inline_pem_with_escaped_newlines(public_key_pem):
    escaped = public_key_pem.strip().replace("\n", "\\n")
    cfg = load_config(environ={"KSEF_NIP": "1", "KSEF_TOKEN": "t", "KSEF_PUBLIC_KEY": escaped})
    assert cfg.public_key == public_key_pem.strip()


def test_token_is_not_in_repr():
    cfg = load_config(environ={"KSEF_NIP": "1", "KSEF_TOKEN": "very-secret-token"})
    assert "very-secret-token" not in repr(cfg)
    assert "very-secret-token" not in repr(cfg.credential)


@pytest.mark.parametrize("environ", [{}, {"KSEF_NIP": "5260250274"}, {"KSEF_TOKEN": "t"}])
def test_missing_credentials(environ):
    with pytest.raises(ConfigError, match="Credenciais"):
        load_config(environ=environ)


def test_missing_ini_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.ini", environ={})


@pytest.mark.parametrize("section, option, value", [
    ("http", "timeout_sec", "0"),
    ("http", "timeout_sec", "121"),
    ("http", "timeout_sec", "soon"),
    ("ksef", "page_size", "251"),
])
def test_out_of_range_values(tmp_path, section, option, value):
    path = write_ini(tmp_path, f"""
        [ksef]
        nip = 5260250274
        token = t

        [{section}]
        {option} = {value}
    """) if section != "ksef" else write_ini(tmp_path, f"""
        [ksef]
        nip = 5260250274
        token = t
        {option} = {value}
    """)
    with pytest.raises(ConfigError):
        load_config(path, environ={})


@pytest.mark.parametrize("var, value", [("KSEF_ENV", "staging"), ("KSEF_PROTOCOL_VERSION", "v3")])
def test_unknown_enum_values(var, value):
    with pytest.raises(ConfigError):
        load_config(environ={"KSEF_NIP": "1", "KSEF_TOKEN": "t", var: value})


def test_unknown_storage_backend(tmp_path):
    path = write_ini(tmp_path, """
        [ksef]
        nip = 5260250274
        token = t

        [storage]
        backend = postgres
    """)
    with pytest.raises(ConfigError, match="backend"):
        load_config(path, environ={})


def test_default_configuration_sends_pkcs1_token(fake_session, public_key_pem, decrypt_pkcs1):
    cfg = load_config(environ={"KSEF_NIP": "5260250274", "KSEF_TOKEN": "tok"})
    fake_session.add("POST", "/online/Session/AuthorisationChallenge",
                     make_response(201, {"timestamp": "1", "challenge": "CH"}))
    fake_session.add("POST", "/online/Session/InitToken", make_response(201, {"sessionToken": {"token": "S"}}))
    client = create_client(cfg.protocol_version, cfg.environment, session=fake_session, **cfg.client_kwargs())

    client.authenticate(cfg.nip, cfg.token, public_key_pem)

    doc = ET.fromstring(fake_session.calls_to("/online/Session/InitToken")[0]["data"])
    encrypted = doc.find(f".//{{{NS_TYPES}}}Token").text
    assert decrypt_pkcs1(encrypted) == "tok|1"


def test_v2_with_oaep_opt_in(tmp_path):
    path = write_ini(tmp_path, """
        [ksef]
        protocol_version = v2
        nip = 5260250274
        token = t
        token_padding = OAEP-SHA256
        auth_poll_interval_sec = 2.5
    """)
    kwargs = load_config(path, environ={}).client_kwargs()
    assert kwargs["padding_scheme"] == "oaep-sha256"
    assert kwargs["auth_poll_interval_sec"] == 2.5


@pytest.mark.parametrize("option, value", [
    ("token_padding", "none"),
    ("auth_poll_interval_sec", "-1"),
    ("auth_poll_interval_sec", "0"),
    ("auth_poll_interval_sec", "61"),
    ("auth_poll_interval_sec", "soon"),
])
def test_invalid_login_settings(tmp_path, option, value):
    path = write_ini(tmp_path, f"""
        [ksef]
        nip = 5260250274
        token = t
        {option} = {value}
    """)
    with pytest.raises(ConfigError):
        load_config(path, environ={})
