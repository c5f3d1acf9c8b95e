#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
cli.py — CLI do ibundle

    ibundle make-bootstrap STABLE@1.0 ./out [--target-arch os.linux.x86_64] [--unpacked] [--refresh]
    ibundle sync
    ibundle config get|set|list|reset
"""

from __future__ import annotations
import argparse
import json
import sys
from typing import Any

from ibundle.modules import config as config_mod
from ibundle.modules import log as log_mod
from ibundle.modules import sync as sync_mod
from ibundle.modules.bootstrap import BootstrapManager
from ibundle.modules.catalog import open_official
from ibundle.modules.errors import EXIT_INTEGRITY, EXIT_OK, ConnectionFailure, IBundleError

# ANSI colors simples
C = {
    "reset": "\033[0m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "cyan": "\033[36m",
}

def color(text: str, col: str) -> str:
    return f"{C.get(col, '')}{text}{C['reset']}"

logger = log_mod.get_logger("cli")

def _print_json_or_plain(data: Any, as_json: bool) -> None:
    if as_json:
        print(json.dumps(data, ensure_ascii=False, indent=2))
    else:
        if isinstance(data, dict):
            for k, v in data.items():
                print(f"{color(str(k), 'cyan')}: {v}")
        elif isinstance(data, list):
            for item in data:
                print(item)
        else:
            print(data)

def _setup_logging(verbose: bool) -> None:
    # sem --verbose o andamento vem do progress_printer, o console só mostra avisos
    log_mod.set_level("debug" if verbose else "warn")

# ---------------------------
# Command handlers
# ---------------------------

def _refresh_official(catalog) -> int:
    try:
        sync_mod.update_server_package_data(catalog)
    except ConnectionFailure as e:
        sync_mod.handle_connection_error(e)
        return e.exit_code
    return EXIT_OK

def cmd_make_bootstrap(args):
    """
    ibundle make-bootstrap <release> <outdir> [--target-arch ARCH] [--unpacked] [--refresh]
    """
    catalog = open_official(config_mod.get("package_storage"))
    if getattr(args, "refresh", False):
        rc = _refresh_official(catalog)
        if rc != EXIT_OK:
            return rc

    manager = BootstrapManager(catalog, cfg={"keep_artifacts": args.keep_temp or config_mod.get("keep_artifacts")})
    if not getattr(args, "json", False) and not getattr(args, "verbose", False):
        manager.add_progress_cb(log_mod.progress_printer())
    result = manager.run(args.release, args.outdir, target_arch=args.target_arch, unpacked=args.unpacked)

    if getattr(args, "json", False):
        _print_json_or_plain(result.to_dict(), True)
    elif result.ok:
        print(color("[OK] Bundles gerados", "green"))
        _print_json_or_plain(result.bundles, False)
    elif result.bundles:
        print(color(f"[WARN] {result.error}", "yellow"), file=sys.stderr)
        _print_json_or_plain(result.bundles, False)
    return result.exit_code

def cmd_sync(args):
    """
    ibundle sync
    """
    catalog = open_official(config_mod.get("package_storage"))
    rc = _refresh_official(catalog)
    if rc == EXIT_OK:
        print(color(f"[OK] Catálogo sincronizado em {config_mod.get('package_storage')}", "green"))
    return rc

def cmd_config(args):
    """
    ibundle config get <key>
    ibundle config set <key> <value> [--system]
    ibundle config list
    ibundle config reset [--system]
    """
    act = args.action
    if act == "get":
        if not args.key:
            print("Uso: ibundle config get <chave>")
            return 1
        print(config_mod.get(args.key))
        return 0
    elif act == "set":
        if not args.key or args.value is None:
            print("Uso: ibundle config set <chave> <valor> [--system]")
            return 1
        try:
            path = config_mod.set(args.key, args.value, system=args.system)
        except KeyError as e:
            print(color(f"[ERRO] {e.args[0]}", "red"), file=sys.stderr)
            return 1
        print(f"[OK] {args.key} = {config_mod.get(args.key)!r} ({path})")
        return 0
    elif act == "list":
        _print_json_or_plain(config_mod.all(), getattr(args, "json", False))
        return 0
    elif act == "reset":
        path = config_mod.reset(system=args.system)
        print(f"[OK] Configuração restaurada para os padrões ({path})")
        return 0
    else:
        print("Ação desconhecida:", act)
        return 1

# -----------------------------------------------------------------------------
# Build argument parser and connect commands
# -----------------------------------------------------------------------------

def build_parser():
    p = argparse.ArgumentParser(prog="ibundle", description="ibundle - bundles de bootstrap offline por arquitetura")
    p.add_argument("--verbose", "-v", action="store_true", help="Modo verboso")
    p.add_argument("--json", action="store_true", help="Imprime JSON quando aplicável")
    sub = p.add_subparsers(dest="command")

    # make-bootstrap
    smb = sub.add_parser("make-bootstrap", aliases=["mb"], help="Gerar bundles de bootstrap de uma release")
    smb.add_argument("release", help="Release (TRACK@versão ou só versão)")
    smb.add_argument("outdir", help="Diretório de saída")
    smb.add_argument("--target-arch", default=None, help="Gerar só para esta arquitetura (ex: os.linux.x86_64)")
    smb.add_argument("--unpacked", action="store_true", help="Copiar diretório em vez de gerar .tar.gz")
    smb.add_argument("--refresh", action="store_true", help="Sincronizar catálogo oficial antes das consultas")
    smb.add_argument("--keep-temp", action="store_true", help="Manter diretórios temporários")
    smb.set_defaults(func=cmd_make_bootstrap)

    # sync
    ssy = sub.add_parser("sync", help="Sincronizar catálogo oficial local")
    ssy.set_defaults(func=cmd_sync)

    # config
    sc = sub.add_parser("config", help="Gerenciar configuração do ibundle")
    sc.add_argument("action", choices=["get", "set", "list", "reset"], help="Ação sobre a configuração")
    sc.add_argument("key", nargs="?", help="Chave da configuração")
    sc.add_argument("value", nargs="?", help="Valor (para set)")
    sc.add_argument("--system", action="store_true", help="Salvar/operar no config global (/etc)")
    sc.set_defaults(func=cmd_config)

    return p

def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    _setup_logging(getattr(args, "verbose", False))

    try:
        rc = args.func(args)
    except IBundleError as e:
        logger.exception("Erro ao executar comando")
        print(color(f"[ERRO] {e}", "red"), file=sys.stderr)
        sys.exit(e.exit_code)
    except Exception as e:
        logger.exception("Erro ao executar comando")
        print(color(f"[ERRO] {e}", "red"), file=sys.stderr)
        sys.exit(EXIT_INTEGRITY)
    sys.exit(rc if isinstance(rc, int) else 0)

if __name__ == "__main__":
    main()
