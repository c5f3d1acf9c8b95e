#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
config.py — Módulo de configuração do ibundle

- Suporta $IBUNDLE_CONFIG > ~/.config/ibundle/config.yml > /etc/ibundle/config.yml > defaults
- Arquivos em YAML, mesclados sobre os defaults
- Permite leitura, escrita, reset e listagem completa da config
"""

import logging
import os

import yaml

logger = logging.getLogger("ibundle.config")

# Caminhos padrão
USER_CONFIG = os.path.expanduser("~/.config/ibundle/config.yml")
SYSTEM_CONFIG = "/etc/ibundle/config.yml"
ENV_VAR = "IBUNDLE_CONFIG"

_HOME = os.path.expanduser("~/.ibundle")

DEFAULTS = {
    # Servidor de pacotes
    "package_server_url": "https://packages.example.org",
    "http_timeout": 30,
    "sync_page_limit": 1000,

    # Catálogo oficial local
    "package_storage": os.path.join(_HOME, "package-metadata", "v2.0.1", "packages.data.db"),

    # Logs
    "log_dir": os.path.join(_HOME, "logs"),

    # Releases
    "default_track": "STABLE",

    # Bundles
    "store_dirname": ".ibundle",
    "bundle_prefix": None,
    "keep_artifacts": False,
}

_config = DEFAULTS.copy()


def _load_from(path: str) -> dict:
    """Carrega configuração de um arquivo YAML se existir."""
    if not os.path.isfile(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.debug("ignoring unreadable config %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.debug("ignoring non-mapping config %s", path)
        return {}
    return data


def config_path() -> str | None:
    """Retorna o arquivo de config efetivo (ou None se só defaults)."""
    env_path = os.getenv(ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    for path in (USER_CONFIG, SYSTEM_CONFIG):
        if os.path.exists(path):
            return path
    return None


def load_config() -> dict:
    """Carrega config seguindo a hierarquia: env > user > system > defaults"""
    global _config
    path = config_path()
    if path is None:
        _config = DEFAULTS.copy()
    else:
        _config = {**DEFAULTS, **_load_from(path)}
    return _config


def _save(cfg: dict, system: bool = False) -> str:
    """Salva configuração em YAML (usuário ou sistema)."""
    path = SYSTEM_CONFIG if system else USER_CONFIG
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, default_flow_style=False, allow_unicode=True)
    return path


def parse_value(raw):
    """Valor vindo da linha de comando -> tipo YAML ("60" -> 60, "true" -> True, "null" -> None)."""
    if not isinstance(raw, str):
        return raw
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def get(key: str, default=None):
    """Obtém valor de uma chave da configuração (com fallback)."""
    value = _config.get(key, DEFAULTS.get(key, default))
    return default if value is None else value


def set(key: str, value, system: bool = False) -> str:
    """
    Grava key no config.yml do usuário (ou do sistema); só as chaves
    alteradas vão para o arquivo, o resto continua vindo dos defaults.
    """
    if key not in DEFAULTS:
        raise KeyError(f"chave desconhecida: {key} (válidas: {', '.join(sorted(DEFAULTS))})")
    path = SYSTEM_CONFIG if system else USER_CONFIG
    overrides = _load_from(path)
    overrides[key] = parse_value(value)
    saved = _save(overrides, system=system)
    load_config()
    return saved


def all() -> dict:
    """Retorna configuração completa (merge de defaults + arquivo carregado)."""
    return load_config()


def reset(system: bool = False) -> str:
    """Restaura configuração para os valores padrão (arquivo vazio)."""
    saved = _save({}, system=system)
    load_config()
    return saved


# Carrega config logo no import
load_config()
