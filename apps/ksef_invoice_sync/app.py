"""
Mini app: sincroniza os cabeçalhos de facturas recebidas no KSeF desde o último ciclo.
"""

import logging
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

from core.base_app import BaseApp, AppResult
from core.config import load_config
from core.context import AppContext
from core.exceptions import KsefSyncError
from core.ksef_client import create_client
from core.ksef_sync import build_orchestrator
from core.logging_setup import setup_logging

logger = logging.getLogger(__name__)


class KsefInvoiceSyncApp(BaseApp):
    """Mini app: um ciclo de sincronização incremental KSeF."""

    @property
    def name(self) -> str:
        return "ksef-invoice-sync"

    @property
    def description(self) -> str:
        return "Descarrega do KSeF os cabeçalhos de facturas recebidas desde a última sincronização"

    @property
    def version(self) -> str:
        return "2.0.0"

    def validate_config(self, config: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
        """
        Valida configuração da mini app.

        Config esperada:
        {
            "config_file": "caminho/para/ksef.ini",  # opcional se KSEF_* estiverem no ambiente
            "check_connectivity": false,            # opcional, diagnóstico antes do ciclo
            "verbose": false                         # opcional
        }
        """
        if not isinstance(config, dict):
            return False, "Config deve ser um dicionário"

        config_file = config.get("config_file")
        if config_file is not None and not isinstance(config_file, str):
            return False, "'config_file' deve ser um caminho"

        return True, None

    def run(self, config: Dict[str, Any], context: AppContext) -> AppResult:
        """
        Executa um ciclo de sincronização.
        """
        # 1. Carregar configuração (INI + variáveis KSEF_*)
        config_file = config.get("config_file")
        try:
            cfg = load_config(context.resolve(Path(config_file)) if config_file else None)
        except KsefSyncError as e:
            return AppResult.from_error(e)

        # 2. Setup logging (mascara o token em todas as mensagens)
        log_file = cfg.log_file or (context.get_or_create_logdir("ksef-invoice-sync") / f"sync_{context.run_id}.log")
        level = logging.DEBUG if config.get("verbose") else logging.INFO
        setup_logging(log_file, level=level, secrets=[cfg.token])
        logger.info(f"Log file: {log_file}")
        logger.info(f"KSeF {cfg.environment.value} ({cfg.protocol_version.value}), NIP {cfg.nip}, storage={cfg.storage_backend}")

        # 3. Diagnóstico opcional (não é pré-condição do ciclo)
        if config.get("check_connectivity"):
            probe = create_client(cfg.protocol_version, cfg.environment, **cfg.client_kwargs())
            try:
                reachable = probe.check_connectivity()
            finally:
                probe.close()
            logger.info(f"Conectividade {probe.base_url}: {'OK' if reachable else 'FALHOU'}")

        # 4. Ciclo
        orchestrator = build_orchestrator(cfg)
        try:
            result = orchestrator.run_sync_cycle(cfg.credential, cfg.environment)
        except KsefSyncError as e:
            logger.error(f"Ciclo falhou ({e.kind}, retryable={e.retryable}): {e}")
            return AppResult.from_error(e)

        output = cfg.sqlite_path if cfg.storage_backend == "sqlite" else cfg.excel_path
        return AppResult(
            success=True,
            message=f"{result.new_invoice_count} novas facturas; sincronizado até {result.to_dict()['synced_at']}",
            data=result.to_dict(),
            output_files=[output] if result.new_invoice_count else [],
        )
