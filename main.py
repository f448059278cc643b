#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
KSeF Sync - Entry point principal.
Executa um ciclo de sincronização (ou outra mini app) por invocação; o
agendamento e as repetições ficam a cargo do agendador externo (cron, systemd timer...).
"""

import argparse
import json
import sys
from pathlib import Path
from orchestrator.runner import AppOrchestrator
from core.logging_setup import setup_logging
import logging

logger = logging.getLogger(__name__)

DEFAULT_APP = "ksef-invoice-sync"


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="KSeF Sync - Orquestrador de Mini Apps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exemplos:
  # Listar apps disponíveis
  python main.py --list-apps

  # Um ciclo de sincronização
  python main.py --app ksef-invoice-sync --config apps.json

  # Só com variáveis de ambiente (KSEF_NIP, KSEF_TOKEN, KSEF_ENV, ...)
  python main.py
        """
    )

    parser.add_argument(
        "--base-dir",
        type=Path,
        default=Path.cwd(),
        help="Diretório base do projeto (default: diretório atual)"
    )

    parser.add_argument(
        "--list-apps",
        action="store_true",
        help="Lista todas as mini apps disponíveis e sai"
    )

    parser.add_argument(
        "--app",
        default=DEFAULT_APP,
        help=f"Nome da mini app a executar (default: {DEFAULT_APP})"
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Ficheiro JSON com a configuração de cada app ({\"ksef-invoice-sync\": {\"config_file\": \"ksef.ini\"}})"
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Imprime o resultado em JSON"
    )

    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Logging verboso"
    )

    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=log_level)

    base_dir = args.base_dir.resolve()
    logger.info(f"KSeF Sync iniciado. Base dir: {base_dir}")

    orchestrator = AppOrchestrator(base_dir)

    if args.list_apps:
        apps = orchestrator.list_apps()
        print("\nMini Apps disponíveis:")
        print("=" * 60)
        for name, info in apps.items():
            print(f"\n{name} v{info['version']}")
            print(f"  Descrição: {info['description']}")
        print("\n" + "=" * 60)
        return 0

    config_data = {}
    if args.config:
        if not args.config.exists():
            logger.error(f"Ficheiro de configuração não encontrado: {args.config}")
            return 1
        try:
            config_data = json.loads(args.config.read_text(encoding="utf-8"))
        except ValueError as e:
            logger.error(f"Erro ao carregar configuração: {e}")
            return 1

    app_config = dict(config_data.get(args.app, {}))
    if args.verbose:
        app_config.setdefault("verbose", True)
    result = orchestrator.run_app(args.app, app_config)

    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    else:
        status = "✓" if result.success else "✗"
        print(f"\n{status} {result.message}")
        if not result.success:
            print(f"  Tipo de erro: {result.error_kind} (repetível: {'sim' if result.retryable else 'não'})")
        if result.output_files:
            print("\nFicheiros gerados:")
            for f in result.output_files:
                print(f"  - {f}")

    return 0 if result.success else 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.info("Interrompido pelo utilizador.")
        sys.exit(130)
    except Exception as e:
        logger.exception(f"Erro fatal: {e}")
        sys.exit(1)
