#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
config.py — Módulo de configuração do lilroot

- Suporta $LILROOT_CONFIG > ~/.config/lilroot/config.yml > /etc/lilroot/config.yml > defaults
- Mantém compatibilidade com YAML
- Permite leitura, escrita, reset e listagem completa da config
- Resolve o layout de diretórios (rootfs, cache, libs nativas, assets)
"""

import os
import yaml

# Caminhos padrão
USER_CONFIG = os.path.expanduser("~/.config/lilroot/config.yml")
SYSTEM_CONFIG = "/etc/lilroot/config.yml"

RELEASES_BASE = "https://github.com/4ier/lilclaw/releases/download/layers-v3"

# Valores padrão (completo)
DEFAULTS = {
    # Diretórios principais (tudo no espaço do usuário, sem root)
    "base_dir": os.path.expanduser("~/.local/share/lilroot"),
    "rootfs_dir": None,       # base_dir/rootfs
    "lib_dir": None,          # base_dir/lib
    "native_lib_dir": None,   # base_dir/native (proot, loader, libtalloc)
    "assets_dir": None,       # base_dir/assets/rootfs (camadas embarcadas)
    "cache_dir": os.path.expanduser("~/.cache/lilroot"),
    "log_dir": os.path.expanduser("~/.local/state/lilroot/log"),

    # Manifesto remoto
    "releases_base": RELEASES_BASE,
    "manifest_url": RELEASES_BASE + "/manifest.json",

    # Gateway / UI
    "gateway_port": 3000,
    "ui_port": 3001,
    "auth_token": "lilclaw-local",
    "provider": "",
    "api_key": "",
    "model": "",

    # Timeouts (segundos)
    "manifest_timeout": 10,
    "connect_timeout": 30,
    "read_timeout": 300,
    "gateway_ready_timeout": 60,
    "ui_ready_timeout": 30,
    "poll_interval": 0.5,
    "stop_grace": 5,
    "restart_delay": 3,       # espera antes de religar após um crash
    "max_restarts": 5,        # reinícios automáticos seguidos; 0 desliga

    # Estado / UI
    "log_buffer_lines": 200,
    "ready_markers": ["usr/bin/node", "usr/local/bin/openclaw"],
}

_config = DEFAULTS.copy()

def _load_from(path: str) -> dict:
    """Carrega configuração de um arquivo YAML se existir."""
    try:
        if os.path.isfile(path):
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
                if not isinstance(data, dict):
                    return {}
                return data
    except (OSError, yaml.YAMLError):
        pass
    return {}

def _active_path(system: bool = False) -> str:
    if system:
        return SYSTEM_CONFIG
    return os.getenv("LILROOT_CONFIG") or USER_CONFIG

def load_config() -> dict:
    """Carrega config seguindo a hierarquia: env > user > system > defaults"""
    global _config

    # 1. Variável de ambiente
    env_path = os.getenv("LILROOT_CONFIG")
    if env_path and os.path.exists(env_path):
        _config = {**DEFAULTS, **_load_from(env_path)}
        return _config

    # 2. Configuração do usuário
    if os.path.exists(USER_CONFIG):
        _config = {**DEFAULTS, **_load_from(USER_CONFIG)}
        return _config

    # 3. Configuração global
    if os.path.exists(SYSTEM_CONFIG):
        _config = {**DEFAULTS, **_load_from(SYSTEM_CONFIG)}
        return _config

    # 4. Defaults
    _config = DEFAULTS.copy()
    return _config

def _save(cfg: dict, system: bool = False) -> None:
    """Salva configuração em YAML (usuário, $LILROOT_CONFIG ou sistema)."""
    path = _active_path(system)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, default_flow_style=False, allow_unicode=True)

def get(key: str, default=None):
    """Obtém valor de uma chave da configuração (com fallback)."""
    if not _config:
        load_config()
    value = _config.get(key)
    if value is None:
        value = DEFAULTS.get(key)
    return default if value is None else value

def set(key: str, value, system: bool = False):
    """Define valor para uma chave e salva em config.yml."""
    cfg = load_config()
    cfg[key] = value
    _save(cfg, system=system)
    _config.update(cfg)

def all() -> dict:
    """Retorna configuração completa (merge de defaults + arquivo carregado)."""
    return load_config()

def reset(system: bool = False):
    """Restaura configuração para os valores padrão."""
    _save(DEFAULTS.copy(), system=system)
    load_config()

def paths(cfg: dict | None = None) -> dict:
    """
    Resolve o layout de diretórios. Chaves vazias derivam de base_dir,
    como o rootfs dentro do diretório de dados do app.
    """
    cfg = cfg if cfg is not None else load_config()
    base = os.path.expanduser(cfg.get("base_dir") or DEFAULTS["base_dir"])

    def _pick(key: str, fallback: str) -> str:
        value = cfg.get(key)
        return os.path.abspath(os.path.expanduser(value)) if value else os.path.abspath(fallback)

    return {
        "base_dir": os.path.abspath(base),
        "rootfs_dir": _pick("rootfs_dir", os.path.join(base, "rootfs")),
        "lib_dir": _pick("lib_dir", os.path.join(base, "lib")),
        "native_lib_dir": _pick("native_lib_dir", os.path.join(base, "native")),
        "assets_dir": _pick("assets_dir", os.path.join(base, "assets", "rootfs")),
        "cache_dir": _pick("cache_dir", DEFAULTS["cache_dir"]),
        "log_dir": _pick("log_dir", DEFAULTS["log_dir"]),
    }

def ensure_dirs():
    """Garante que diretórios essenciais existem."""
    resolved = paths()
    for key in ["rootfs_dir", "lib_dir", "cache_dir", "log_dir"]:
        os.makedirs(resolved[key], exist_ok=True)

# Carrega config logo no import
load_config()

# Execução direta para debug
if __name__ == "__main__":
    import json
    print("Config atual:")
    print(json.dumps(all(), indent=2, ensure_ascii=False))
