"""
Contexto partilhado entre mini apps.
"""

from dataclasses import dataclass, field
from pathlib import Path
from datetime import datetime


@dataclass
class AppContext:
    """Contexto de uma execução do orquestrador.

    Não guarda tokens de sessão KSeF: cada ciclo autentica-se de novo.
    """

    # Diretórios
    base_dir: Path
    log_dir: Path

    # Metadados
    run_id: str = field(default_factory=lambda: datetime.now().strftime("%Y%m%d_%H%M%S"))
    start_time: datetime = field(default_factory=datetime.now)

    def resolve(self, path: Path) -> Path:
        """Caminhos relativos são relativos a base_dir."""
        path = Path(path).expanduser()
        return path if path.is_absolute() else (self.base_dir / path).resolve()

    def get_or_create_logdir(self, subdir: str) -> Path:
        """Cria subdiretório em log_dir se não existir."""
        path = self.log_dir / subdir
        path.mkdir(parents=True, exist_ok=True)
        return path
