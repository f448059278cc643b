"""
Orquestrador principal para executar mini apps.
"""

import importlib
import pkgutil
from pathlib import Path
from typing import Dict, Any, Optional

import apps as apps_package
from core.base_app import BaseApp, AppResult
from core.context import AppContext
import logging

logger = logging.getLogger(__name__)


class AppOrchestrator:
    """Orquestrador de mini apps."""

    def __init__(self, base_dir: Path, context: Optional[AppContext] = None):
        """
        Inicializa o orquestrador.

        Args:
            base_dir: Diretório base (caminhos relativos da config resolvem aqui)
            context: Contexto da execução (opcional, será criado se None)
        """
        self.base_dir = Path(base_dir).resolve()

        if context is None:
            self.context = AppContext(
                base_dir=self.base_dir,
                log_dir=self.base_dir / "logs"
            )
        else:
            self.context = context

        self.apps: Dict[str, BaseApp] = {}
        self._load_apps()

    def _load_apps(self):
        """Carrega dinamicamente todas as mini apps do pacote apps."""
        for info in pkgutil.iter_modules(apps_package.__path__):
            if not info.ispkg:
                continue

            module_name = f"{apps_package.__name__}.{info.name}.app"
            try:
                module = importlib.import_module(module_name)
            except ModuleNotFoundError as e:
                if e.name == module_name:
                    continue
                logger.error(f"Erro ao carregar app {info.name}: {e}", exc_info=True)
                continue
            except Exception as e:
                logger.error(f"Erro ao carregar app {info.name}: {e}", exc_info=True)
                continue

            # Procurar classe que herda de BaseApp
            app_class = None
            for attr_name in dir(module):
                attr = getattr(module, attr_name)
                if (isinstance(attr, type) and
                        issubclass(attr, BaseApp) and
                        attr is not BaseApp and
                        attr.__module__ == module.__name__):
                    app_class = attr
                    break

            if app_class:
                app_instance = app_class()
                self.apps[app_instance.name] = app_instance
                logger.debug(f"Mini app carregada: {app_instance.name} v{app_instance.version}")
            else:
                logger.warning(f"Nenhuma classe BaseApp encontrada em {module_name}")

    def list_apps(self) -> Dict[str, Dict[str, str]]:
        """Lista todas as mini apps disponíveis."""
        return {
            name: {
                "description": app.description,
                "version": app.version,
            }
            for name, app in self.apps.items()
        }

    def run_app(self, app_name: str, config: Dict[str, Any]) -> AppResult:
        """
        Executa uma mini app específica.

        Nunca lança exceções: qualquer falha é devolvida como AppResult com
        a classificação do erro, para o agendador externo decidir se repete.
        """
        if app_name not in self.apps:
            return AppResult(
                success=False,
                message=f"App '{app_name}' não encontrada. Apps disponíveis: {', '.join(self.apps.keys())}",
                error_kind="config",
            )

        app = self.apps[app_name]

        is_valid, error = app.validate_config(config)
        if not is_valid:
            return AppResult(
                success=False,
                message=f"Config inválida para '{app_name}': {error}",
                error_kind="config",
            )

        try:
            logger.info(f"Executando mini app: {app_name}")
            result = app.run(config, self.context)
        except Exception as e:
            logger.exception(f"Erro ao executar '{app_name}': {e}")
            return AppResult.from_error(e)

        if result.success:
            logger.info(f"Mini app '{app_name}' executada com sucesso: {result.message}")
        else:
            logger.error(f"Mini app '{app_name}' falhou: {result.message}")
        return result
