"""
Exceções personalizadas do cliente KSeF.

Cada erro transporta a sua classificação (``kind``) e se o agendador externo
pode voltar a tentar o ciclo sem intervenção do operador (``retryable``).
"""

from typing import Optional


class KsefSyncError(Exception):
    """Exceção base para erros do ciclo de sincronização."""
    kind = "error"
    retryable = False


class ConfigError(KsefSyncError):
    """Erro de configuração."""
    kind = "config"


class TransportError(KsefSyncError):
    """Falha de rede, TLS ou timeout. A causa original fica em ``__cause__``."""
    kind = "transport"
    retryable = True


class ProtocolError(KsefSyncError):
    """Resposta do servidor com formato inesperado ou estado de erro."""
    kind = "protocol"
    retryable = True

    INVALID_RESPONSE = "INVALID_RESPONSE"
    NO_RESULTS = "NO_RESULTS"
    SERVER_ERROR = "SERVER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str = SERVER_ERROR,
        status_code: Optional[int] = None,
        service_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.service_code = service_code


class AuthError(KsefSyncError):
    """Credenciais ou challenge rejeitados pelo servidor."""
    kind = "auth"

    def __init__(self, message: str, *, status_code: Optional[int] = None, reason: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class EncryptionError(KsefSyncError):
    """Chave pública inválida ou texto demasiado longo para o módulo RSA."""
    kind = "encryption"


class PersistenceError(KsefSyncError):
    """Falha ao gravar/ler o estado de sincronização ou as facturas."""
    kind = "persistence"
    retryable = True
