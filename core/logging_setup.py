"""
Setup de logging comum para todas as mini apps.
"""

import logging
import sys
from pathlib import Path
from typing import Iterable, Optional


class SecretMaskFilter(logging.Filter):
    """Substitui valores sensíveis (token KSeF) por '***' nas mensagens formatadas."""

    def __init__(self, secrets: Iterable[str]):
        super().__init__()
        self.secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        msg = record.getMessage()
        masked = msg
        for s in self.secrets:
            masked = masked.replace(s, "***")
        if masked != msg:
            record.msg = masked
            record.args = None
        return True


def setup_logging(
    log_file: Optional[Path] = None,
    level: int = logging.INFO,
    logger_name: Optional[str] = None,
    secrets: Iterable[str] = (),
) -> logging.Logger:
    """
    Configura logging para console e ficheiro.

    Args:
        log_file: Caminho para ficheiro de log (opcional)
        level: Nível de logging
        logger_name: Nome do logger (None = root, apanha core.* e apps.*)
        secrets: Valores a mascarar em todas as mensagens

    Returns:
        Logger configurado
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    if logger_name:
        logger.propagate = False

    # Remover handlers existentes (para evitar duplicação em re-runs)
    logger.handlers = []

    fmt = logging.Formatter(
        "[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    mask = SecretMaskFilter(secrets)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(fmt)
    console_handler.addFilter(mask)
    logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setFormatter(fmt)
        file_handler.addFilter(mask)
        logger.addHandler(file_handler)

    # urllib3 regista URLs completos em DEBUG
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))

    return logger
