"""
Mini app: verifica se o endpoint público do KSeF responde.
"""

from pathlib import Path
from typing import Dict, Any, Optional, Tuple

from core.base_app import BaseApp, AppResult
from core.config import load_config
from core.context import AppContext
from core.exceptions import KsefSyncError
from core.ksef_client import create_client


class KsefConnectivityCheckApp(BaseApp):

    @property
    def name(self) -> str:
        return "ksef-connectivity-check"

    @property
    def description(self) -> str:
        return "Diagnóstico: testa o acesso ao endpoint público do ambiente KSeF configurado"

    @property
    def version(self) -> str:
        return "1.0.0"

    def validate_config(self, config: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
        if not isinstance(config, dict):
            return False, "Config deve ser um dicionário"
        return True, None

    def run(self, config: Dict[str, Any], context: AppContext) -> AppResult:
        config_file = config.get("config_file")
        try:
            cfg = load_config(context.resolve(Path(config_file)) if config_file else None)
        except KsefSyncError as e:
            return AppResult.from_error(e)

        client = create_client(cfg.protocol_version, cfg.environment, **cfg.client_kwargs())
        try:
            reachable = client.check_connectivity()
        finally:
            client.close()
        return AppResult(
            success=reachable,
            message=f"{client.base_url}: {'acessível' if reachable else 'inacessível'}",
            data={"base_url": client.base_url, "reachable": reachable},
            error_kind=None if reachable else "transport",
            retryable=not reachable,
        )
