#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
cli.py — CLI do lilroot (bootstrap, quick-start, status, manifest, config, logs)
"""

from __future__ import annotations
import argparse
import json
import os
import sys
import time
from typing import Any

import yaml

from lilroot.modules import config as config_mod
from lilroot.modules import log as log_mod
from lilroot.modules.bootstrap import BootstrapManager, BootstrapState
from lilroot.modules.gateway_config import GatewayConfig
from lilroot.modules.layers import LayerProvisioner
from lilroot.modules.manifest import fetch_manifest
from lilroot.modules.sandbox import Sandbox

# ANSI colors simples
C = {
    "reset": "\033[0m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "magenta": "\033[35m",
    "cyan": "\033[36m",
    "bold": "\033[1m",
}

def color(text: str, col: str) -> str:
    return f"{C.get(col, '')}{text}{C['reset']}"

logger = log_mod.get_logger("cli")

# Small helpers
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
    log_mod.setup()
    log_mod.set_level("debug" if verbose else "info")

def _gateway_config(args) -> GatewayConfig:
    return GatewayConfig.from_config(
        provider=getattr(args, "provider", None),
        api_key=getattr(args, "api_key", None),
        model=getattr(args, "model", None),
        port=getattr(args, "port", None),
        ui_port=getattr(args, "ui_port", None),
    )

# ---------------------------
# Command handlers
# ---------------------------

def _run_manager(args, quick: bool) -> int:
    gw = _gateway_config(args)
    config_mod.ensure_dirs()
    bm = BootstrapManager()

    def on_state(snap):
        pct = int(bm.progress.value * 100)
        col = "red" if snap.state is BootstrapState.ERROR else "magenta"
        print(color(f"[{snap.state.value}] {pct:3d}%", col))

    bm.state.subscribe(on_state, replay=False)

    started = bm.quick_start(gw) if quick else bm.bootstrap(gw)
    if not started:
        print(color("[ERRO] Já existe uma execução em andamento", "red"))
        return 2

    try:
        bm.wait()
    except KeyboardInterrupt:
        print(color("\n== Interrompido ==", "yellow"))
        bm.shutdown()
        return 1

    snap = bm.current
    if snap.state is BootstrapState.ERROR:
        kind = getattr(bm.last_error, "kind", None)
        label = kind.value if kind is not None else "error"
        print(color(f"[ERRO:{label}] {snap.message}", "red"), file=sys.stderr)
        return 1

    if getattr(args, "json", False):
        _print_json_or_plain(bm.snapshot(), True)

    if getattr(args, "no_wait", False):
        bm.stop()
        print(color("[OK] Gateway iniciou e respondeu; processos encerrados (--no-wait)", "green"))
        return 0

    print(color(f"[OK] Rodando: gateway em 127.0.0.1:{gw.port}, UI em 127.0.0.1:{gw.ui_port} (Ctrl+C para parar)", "green"))
    try:
        # crash com reinício pendente mantém o monitor (ou um novo worker) vivo
        while bm.processes_alive() or bm.is_monitoring() or bm.is_busy():
            time.sleep(1)
    except KeyboardInterrupt:
        print(color("\n== Parando ==", "magenta"))
        bm.stop()
        return 0

    print(color(f"[ERRO] {bm.current.message or 'processo encerrou inesperadamente'}", "red"), file=sys.stderr)
    for line in bm.logs.lines()[-10:]:
        print(line, file=sys.stderr)
    bm.stop()
    return 1

def cmd_bootstrap(args):
    """
    lilroot bootstrap [--provider P --api-key K --model M --port N --ui-port N --no-wait]
    """
    return _run_manager(args, quick=False)

def cmd_quick_start(args):
    """
    lilroot quick-start [mesmas opções de bootstrap]
    """
    return _run_manager(args, quick=True)

def cmd_status(args):
    """
    lilroot status
    """
    prov = LayerProvisioner()
    data = prov.status()
    layers = fetch_manifest()
    data["stale"] = [l.label for l in prov.ledger.stale_layers(layers)]
    data["sandbox"] = Sandbox().describe()
    if args.json:
        _print_json_or_plain(data, True)
        return 0
    ready = color("pronto", "green") if data["ready"] else color("incompleto", "yellow")
    print(color("=== Rootfs ===", "magenta"))
    print(f"{color('caminho', 'cyan')}: {data['rootfs']}")
    print(f"{color('estado', 'cyan')}: {ready}")
    if data["missing"]:
        print(f"{color('ausentes', 'cyan')}: {', '.join(data['missing'])}")
    engine = color("ok", "green") if data["sandbox"]["proot_present"] else color("ausente", "red")
    print(f"{color('proot', 'cyan')}: {data['sandbox']['proot']} ({engine})")
    print(color("=== Camadas instaladas ===", "magenta"))
    if not data["layers"]:
        print("(nenhuma)")
    for name, entry in data["layers"].items():
        print(f"{color(name, 'cyan')}: {entry.get('version')} ({entry.get('installedAt')})")
    if data["stale"]:
        print(color(f"Desatualizadas: {', '.join(data['stale'])}", "yellow"))
    return 0

def cmd_manifest(args):
    """
    lilroot manifest
    """
    prov = LayerProvisioner()
    layers = fetch_manifest(log_sink=logger.info)
    rows = []
    for l in layers:
        rows.append({
            "name": l.name,
            "version": l.version,
            "size": l.display_size,
            "source": "asset" if prov.resolve_source(l) else "remote",
            "url": l.fallback_url,
        })
    if args.json:
        _print_json_or_plain(rows, True)
        return 0
    print(color("=== Camadas (ordem de aplicação) ===", "magenta"))
    for r in rows:
        print(f"{color(r['name'], 'cyan')}@{r['version']}  {r['size']:>7}  [{r['source']}]  {r['url']}")
    return 0

def cmd_config(args):
    """
    lilroot config get <key>
    lilroot config set <key> <value> [--system]
    lilroot config list
    lilroot config reset [--system]
    """
    cfg = config_mod
    act = args.action
    if act == "get":
        if not args.key:
            print("Uso: lilroot config get <chave>")
            return 1
        print(cfg.get(args.key))
        return 0
    elif act == "set":
        if not args.key or args.value is None:
            print("Uso: lilroot config set <chave> <valor> [--system]")
            return 1
        # "3000" -> 3000, "[a, b]" -> lista
        value = yaml.safe_load(args.value)
        cfg.set(args.key, value, system=args.system)
        print(f"[OK] Configuração '{args.key}' definida para '{value}' ({'global' if args.system else 'usuário'})")
        return 0
    elif act == "list":
        allcfg = cfg.all()
        for k, v in allcfg.items():
            if k == "api_key" and v:
                v = "***"
            print(f"{k}: {v}")
        return 0
    elif act == "reset":
        cfg.reset(system=args.system)
        print(f"[OK] Configuração restaurada para padrões {'globais' if args.system else 'de usuário'}")
        return 0
    else:
        print("Ação desconhecida:", act)
        return 1

def cmd_logs(args):
    """
    lilroot logs [--lines N] [--follow]
    """
    log_file = os.path.join(config_mod.paths()["log_dir"], "lilroot.log")
    if not os.path.isfile(log_file):
        print(color(f"[ERRO] Log não encontrado: {log_file}", "red"))
        return 1

    with open(log_file, "r", encoding="utf-8", errors="replace") as f:
        lines = f.readlines()
    for line in lines[-args.lines:]:
        print(_colorize_log_line(line.rstrip()))

    if getattr(args, "follow", False):
        print(color(f"== Seguindo {log_file} (Ctrl+C para sair) ==", "magenta"))
        try:
            with open(log_file, "r", encoding="utf-8", errors="replace") as f:
                f.seek(0, os.SEEK_END)
                while True:
                    line = f.readline()
                    if not line:
                        time.sleep(0.5)
                        continue
                    print(_colorize_log_line(line.rstrip()))
        except KeyboardInterrupt:
            print(color("\n== Parado ==", "magenta"))
    return 0

def _colorize_log_line(line: str) -> str:
    if "[ERROR]" in line:
        return color(line, "red")
    if "[WARNING]" in line:
        return color(line, "yellow")
    return line

# -----------------------------------------------------------------------------
# Build argument parser and connect commands
# -----------------------------------------------------------------------------

def _add_start_options(sp) -> None:
    sp.add_argument("--provider", default=None, help="Provedor do modelo (openai, anthropic, deepseek, ...)")
    sp.add_argument("--api-key", dest="api_key", default=None, help="Credencial do provedor")
    sp.add_argument("--model", default=None, help="Modelo (vazio = padrão do provedor)")
    sp.add_argument("--port", type=int, default=None, help="Porta do gateway")
    sp.add_argument("--ui-port", dest="ui_port", type=int, default=None, help="Porta da UI de chat")
    sp.add_argument("--no-wait", dest="no_wait", action="store_true",
                    help="Sai assim que tudo estiver pronto (encerra os processos)")

def build_parser():
    p = argparse.ArgumentParser(prog="lilroot", description="lilroot - rootfs em camadas + gateway em proot")
    p.add_argument("--verbose", "-v", action="store_true", help="Modo verboso")
    p.add_argument("--json", action="store_true", help="Imprime JSON quando aplicável")
    sub = p.add_subparsers(dest="command")

    sb = sub.add_parser("bootstrap", help="Provisionamento completo e start")
    _add_start_options(sb)
    sb.set_defaults(func=cmd_bootstrap)

    sq = sub.add_parser("quick-start", aliases=["start"], help="Start rápido (só camadas desatualizadas)")
    _add_start_options(sq)
    sq.set_defaults(func=cmd_quick_start)

    ss = sub.add_parser("status", help="Estado do rootfs e das camadas")
    ss.set_defaults(func=cmd_status)

    sm = sub.add_parser("manifest", help="Listar camadas do manifesto")
    sm.set_defaults(func=cmd_manifest)

    sc = sub.add_parser("config", help="Gerenciar configuração do lilroot")
    sc.add_argument("action", choices=["get", "set", "list", "reset"], help="Ação sobre a configuração")
    sc.add_argument("key", nargs="?", help="Chave da configuração")
    sc.add_argument("value", nargs="?", help="Valor (para set)")
    sc.add_argument("--system", action="store_true", help="Salvar/operar no config global (/etc)")
    sc.set_defaults(func=cmd_config)

    sl = sub.add_parser("logs", help="Mostrar o log do lilroot")
    sl.add_argument("--lines", "-n", type=int, default=50, help="Quantas linhas do final")
    sl.add_argument("--follow", "-f", action="store_true", help="Seguir (tail -f)")
    sl.set_defaults(func=cmd_logs)

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
        if isinstance(rc, int):
            sys.exit(rc)
        sys.exit(0)
    except Exception as e:
        logger.exception("Erro ao executar comando")
        print(color(f"[ERRO] {e}", "red"), file=sys.stderr)
        sys.exit(1)

if __name__ == "__main__":
    main()
