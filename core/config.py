"""
Configuração do ciclo de sincronização KSeF.

Lida uma única vez no arranque (ficheiro INI + variáveis de ambiente) e passada
explicitamente ao cliente e ao orquestrador; o código de protocolo nunca lê
o ambiente diretamente.

Exemplo de INI:

    [ksef]
    environment = test
    protocol_version = v1
    nip = 1234567890
    token = ...                 ; ou KSEF_TOKEN no ambiente
    public_key = keys/ksef.pem  ; opcional: texto PEM ou caminho
    token_padding = pkcs1v15    ; oaep-sha256 só por opção explícita

    [http]
    timeout_sec = 30
    proxy = http://proxy:3128

    [http_headers]
    X-Client-Name = bwb

    [storage]
    backend = excel
    excel_path = ksef_invoices.xlsx
    watermark_path = ksef_state.json
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from core.exceptions import ConfigError
from core.ksef_client import DEFAULT_PAGE_SIZE, DEFAULT_TIMEOUT_SEC, MAX_TIMEOUT_SEC, TOKEN_PADDING_SCHEMES
from core.ksef_crypto import SCHEME_PKCS1V15
from core.ksef_models import Credential, Environment, ProtocolVersion

STORAGE_BACKENDS = ("excel", "sqlite")
MAX_PAGE_SIZE = 250
MAX_AUTH_POLL_INTERVAL_SEC = 60.0

# variável de ambiente -> (secção, opção)
ENV_OVERRIDES = {
    "KSEF_NIP": ("ksef", "nip"),
    "KSEF_TOKEN": ("ksef", "token"),
    "KSEF_ENV": ("ksef", "environment"),
    "KSEF_PROTOCOL_VERSION": ("ksef", "protocol_version"),
    "KSEF_PUBLIC_KEY": ("ksef", "public_key"),
    "KSEF_PROXY": ("http", "proxy"),
}


@dataclass
class SyncConfig:
    environment: Environment
    protocol_version: ProtocolVersion
    nip: str
    token: str = field(repr=False)
    public_key: Optional[str] = field(default=None, repr=False)
    token_padding: str = SCHEME_PKCS1V15
    subject_type: Optional[str] = None
    page_size: int = DEFAULT_PAGE_SIZE
    timeout_sec: int = DEFAULT_TIMEOUT_SEC
    proxy: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    auth_poll_attempts: int = 30
    auth_poll_interval_sec: float = 1.0
    storage_backend: str = "excel"
    excel_path: Path = Path("ksef_invoices.xlsx")
    sqlite_path: Path = Path("ksef_sync.db")
    watermark_path: Path = Path("ksef_state.json")
    log_file: Optional[Path] = None

    @property
    def credential(self) -> Credential:
        return Credential(tax_id=self.nip, secret=self.token)

    def client_kwargs(self) -> Dict[str, object]:
        kwargs: Dict[str, object] = {
            "timeout_sec": self.timeout_sec,
            "proxy": self.proxy,
            "headers": dict(self.headers),
            "page_size": self.page_size,
            "subject_type": self.subject_type,
            "padding_scheme": self.token_padding,
        }
        if self.protocol_version is ProtocolVersion.V2:
            kwargs["auth_poll_attempts"] = self.auth_poll_attempts
            kwargs["auth_poll_interval_sec"] = self.auth_poll_interval_sec
        return kwargs


def _resolve_path(raw: str, base_dir: Path) -> Path:
    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = (base_dir / p).resolve()
    return p


def _read_public_key(raw: str, base_dir: Path) -> str:
    """Texto PEM/base64 inline ou caminho para um ficheiro com a chave."""
    raw = raw.strip()
    if "-----BEGIN" in raw:
        return raw.replace("\\n", "\n")
    candidate = _resolve_path(raw, base_dir)
    if candidate.exists():
        try:
            return candidate.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigError(f"Não foi possível ler a chave pública {candidate}: {e}") from e
    # base64 DER (formato publicado pela API v2)
    return raw


def _get_int(cp: configparser.ConfigParser, section: str, option: str, fallback: int, lo: int, hi: int) -> int:
    try:
        value = cp.getint(section, option, fallback=fallback) if section in cp else fallback
    except ValueError as e:
        raise ConfigError(f"{section}.{option} deve ser inteiro: {e}") from e
    if not lo <= value <= hi:
        raise ConfigError(f"{section}.{option} fora do intervalo {lo}..{hi}: {value}")
    return value


def load_config(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> SyncConfig:
    """
    Carrega a configuração do INI (opcional) e aplica as variáveis KSEF_*.

    Raises:
        ConfigError: ficheiro inexistente, valores inválidos ou credenciais em falta.
    """
    environ = os.environ if environ is None else environ
    cp = configparser.ConfigParser(interpolation=None)
    cp.optionxform = str  # nomes de cabeçalhos HTTP são sensíveis à capitalização

    if path is not None:
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigError(f"INI não encontrado: {path}")
        cp.read(path, encoding="utf-8")
        base_dir = path.resolve().parent
    else:
        base_dir = Path.cwd()

    for var, (section, option) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            if section not in cp:
                cp.add_section(section)
            cp.set(section, option, value)

    def opt(section: str, option: str, fallback: str = "") -> str:
        if section not in cp:
            return fallback
        return cp.get(section, option, fallback=fallback).strip()

    try:
        environment = Environment.parse(opt("ksef", "environment", "test"))
        protocol_version = ProtocolVersion.parse(opt("ksef", "protocol_version", "v1"))
    except ValueError as e:
        raise ConfigError(str(e)) from e

    nip = opt("ksef", "nip")
    token = opt("ksef", "token")
    if not nip or not token:
        raise ConfigError("Credenciais em falta: ksef.nip e ksef.token (ou KSEF_NIP/KSEF_TOKEN)")

    public_key_raw = opt("ksef", "public_key")
    public_key = _read_public_key(public_key_raw, base_dir) if public_key_raw else None

    token_padding = opt("ksef", "token_padding", SCHEME_PKCS1V15).lower()
    if token_padding not in TOKEN_PADDING_SCHEMES:
        raise ConfigError(f"ksef.token_padding inválido: {token_padding} (esperado: {', '.join(TOKEN_PADDING_SCHEMES)})")

    backend = opt("storage", "backend", "excel").lower()
    if backend not in STORAGE_BACKENDS:
        raise ConfigError(f"storage.backend inválido: {backend} (esperado: {', '.join(STORAGE_BACKENDS)})")

    headers: Dict[str, str] = {}
    user_agent = opt("http", "user_agent")
    if user_agent:
        headers["User-Agent"] = user_agent
    accept_language = opt("http", "accept_language")
    if accept_language:
        headers["Accept-Language"] = accept_language
    if "http_headers" in cp:
        for name, value in cp.items("http_headers"):
            headers[name] = value.strip()

    try:
        poll_interval = float(opt("ksef", "auth_poll_interval_sec", "1.0"))
    except ValueError as e:
        raise ConfigError(f"ksef.auth_poll_interval_sec inválido: {e}") from e
    if not 0 < poll_interval <= MAX_AUTH_POLL_INTERVAL_SEC:
        raise ConfigError(f"ksef.auth_poll_interval_sec fora do intervalo 0..{MAX_AUTH_POLL_INTERVAL_SEC:g}: {poll_interval}")

    log_file_raw = opt("logging", "log_file")

    return SyncConfig(
        environment=environment,
        protocol_version=protocol_version,
        nip=nip,
        token=token,
        public_key=public_key,
        token_padding=token_padding,
        subject_type=opt("ksef", "subject_type") or None,
        page_size=_get_int(cp, "ksef", "page_size", DEFAULT_PAGE_SIZE, 1, MAX_PAGE_SIZE),
        timeout_sec=_get_int(cp, "http", "timeout_sec", DEFAULT_TIMEOUT_SEC, 1, MAX_TIMEOUT_SEC),
        proxy=opt("http", "proxy") or None,
        headers=headers,
        auth_poll_attempts=_get_int(cp, "ksef", "auth_poll_attempts", 30, 1, 600),
        auth_poll_interval_sec=poll_interval,
        storage_backend=backend,
        excel_path=_resolve_path(opt("storage", "excel_path", "ksef_invoices.xlsx"), base_dir),
        sqlite_path=_resolve_path(opt("storage", "sqlite_path", "ksef_sync.db"), base_dir),
        watermark_path=_resolve_path(opt("storage", "watermark_path", "ksef_state.json"), base_dir),
        log_file=_resolve_path(log_file_raw, base_dir) if log_file_raw else None,
    )
