#!/usr/bin/env python3
"""
Operações de manutenção pela linha de comando (sem a API rodando).

Uso:
    python3 -m app.cli cleanup --user-id <uuid>              # dry run
    python3 -m app.cli cleanup --user-id <uuid> --commit
    python3 -m app.cli import-file --user-id <uuid> vendas.json
    python3 -m app.cli import-period --user-id <uuid> --begin 2026-01-01 --end 2026-01-31

import-file aceita uma lista de vendas ou a resposta de /vendas ({"data": [...]}).
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from app.services.duplicate_cleanup import run_cleanup
from app.services.job_locks import user_job_lock
from app.services.sales_importer import import_sales, import_sales_for_period

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger("cli")


def load_sales_file(path: Path) -> list[dict]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("data") or []
    if not isinstance(payload, list):
        raise ValueError(f"{path}: expected a list of sales or an object with 'data'")
    return payload


def _summary(label: str, result: dict) -> None:
    counts = {k: v for k, v in result.items() if k != "details"}
    print(f"{label}: {json.dumps(counts, ensure_ascii=False, default=str)}")
    for detail in result.get("details", []):
        if detail.get("status") in ("error", "merge_failed"):
            print(f"  ! {json.dumps(detail, ensure_ascii=False, default=str)}")


async def _cleanup(args) -> int:
    async with user_job_lock(args.user_id):
        report = await run_cleanup(args.user_id, dry_run=not args.commit, operator_id=args.operator_id)
    print(f"Modo: {report['mode']}  Usuário: {report['user']['email'] or report['user']['id']}")
    _summary("Carteiras", report["wallets"])
    _summary("Transações", report["transactions"])
    return 1 if report["wallets"]["errors"] or report["transactions"]["errors"] else 0


async def _import_file(args) -> int:
    sales = load_sales_file(Path(args.file))
    logger.info("%d vendas lidas de %s", len(sales), args.file)
    async with user_job_lock(args.user_id):
        result = await import_sales(args.user_id, sales)
    _summary("Importação", result)
    return 1 if result["errors"] else 0


async def _import_period(args) -> int:
    async with user_job_lock(args.user_id):
        result = await import_sales_for_period(args.user_id, args.begin, args.end, refresh=True)
    _summary("Importação", result)
    return 1 if result["errors"] or result["partial"] else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Conciliador Gestão Click — manutenção")
    sub = parser.add_subparsers(dest="command", required=True)

    p_cleanup = sub.add_parser("cleanup", help="Remove carteiras e transações duplicadas")
    p_cleanup.add_argument("--user-id", required=True)
    p_cleanup.add_argument("--commit", action="store_true", help="Aplica as remoções (padrão: dry run)")
    p_cleanup.add_argument("--operator-id", default=None, help="Usuário que recebe a notificação")
    p_cleanup.set_defaults(func=_cleanup)

    p_file = sub.add_parser("import-file", help="Importa vendas de um arquivo JSON")
    p_file.add_argument("--user-id", required=True)
    p_file.add_argument("file")
    p_file.set_defaults(func=_import_file)

    p_period = sub.add_parser("import-period", help="Busca e importa vendas de um período")
    p_period.add_argument("--user-id", required=True)
    p_period.add_argument("--begin", required=True, help="YYYY-MM-DD")
    p_period.add_argument("--end", required=True, help="YYYY-MM-DD")
    p_period.set_defaults(func=_import_period)

    args = parser.parse_args(argv)
    try:
        return asyncio.run(args.func(args))
    except Exception as exc:
        logger.error("%s falhou: %s", args.command, exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
