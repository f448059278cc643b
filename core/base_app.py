"""
Classe base abstrata para todas as mini apps.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass, field
from core.context import AppContext
from core.exceptions import KsefSyncError


@dataclass
class AppResult:
    """Resultado da execução de uma mini app.

    Em caso de falha, ``error_kind`` classifica o erro (transport, protocol,
    auth, encryption, persistence, config) e ``retryable`` indica se o
    agendador pode repetir sem intervenção.
    """
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    output_files: List[Path] = field(default_factory=list)
    error_kind: Optional[str] = None
    retryable: bool = False

    @classmethod
    def from_error(cls, exc: Exception) -> "AppResult":
        if isinstance(exc, KsefSyncError):
            return cls(
                success=False,
                message=f"{type(exc).__name__}: {exc}",
                error_kind=exc.kind,
                retryable=exc.retryable,
            )
        return cls(success=False, message=f"Erro inesperado: {exc}", error_kind="unexpected")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"status": "ok" if self.success else "error", "message": self.message}
        if self.data is not None:
            out["data"] = self.data
        if not self.success:
            out["error_kind"] = self.error_kind
            out["retryable"] = self.retryable
        return out


class BaseApp(ABC):
    """Classe base abstrata para todas as mini apps."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Nome único da mini app (ex: 'ksef-invoice-sync')."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Descrição da funcionalidade da mini app."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Versão da mini app."""
        pass

    @abstractmethod
    def validate_config(self, config: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
        """
        Valida a configuração da mini app.

        Args:
            config: Configuração a validar

        Returns:
            (is_valid, error_message)
        """
        pass

    @abstractmethod
    def run(self, config: Dict[str, Any], context: AppContext) -> AppResult:
        """
        Executa a mini app.

        Args:
            config: Configuração específica da mini app
            context: Contexto da execução

        Returns:
            AppResult com resultado da execução
        """
        pass
