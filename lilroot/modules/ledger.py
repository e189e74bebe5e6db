"""
ledger.py — Registro de versões das camadas materializadas no rootfs.

Arquivo <rootfs>/.layers.json:
    {"base": {"version": "2.0.0", "installedAt": "2026-02-17T10:00:00+00:00"}, ...}

- load(): arquivo ausente ou corrompido vira {} (nunca fatal)
- stale_layers(manifest): camadas sem entrada ou com versão diferente
- commit(name, version): upsert + regrava o JSON inteiro (indentado)
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from packaging.version import InvalidVersion, Version

from lilroot.modules import log
from lilroot.modules.errors import LedgerCorruptError

logger = log.get_logger("ledger")

LEDGER_NAME = ".layers.json"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_version(v: Optional[str]):
    if not v:
        return None
    try:
        return Version(v)
    except InvalidVersion:
        return None


class VersionLedger:
    def __init__(self, rootfs_dir: str, filename: str = LEDGER_NAME):
        self.rootfs_dir = rootfs_dir
        self.path = os.path.join(rootfs_dir, filename)

    @property
    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load_strict(self) -> Dict[str, Dict[str, str]]:
        """Como load(), mas levanta LedgerCorruptError se o arquivo não for um objeto JSON."""
        if not self.exists:
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise LedgerCorruptError(f"ledger ilegível em {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise LedgerCorruptError(f"ledger em {self.path} não é um objeto JSON")
        return {k: v for k, v in data.items() if isinstance(v, dict)}

    def load(self) -> Dict[str, Dict[str, str]]:
        try:
            return self.load_strict()
        except LedgerCorruptError as e:
            logger.warning("%s; tratando como instalação vazia", e)
            return {}

    def installed_version(self, name: str) -> Optional[str]:
        entry = self.load().get(name)
        return entry.get("version") if entry else None

    def stale_layers(self, manifest: Iterable) -> List:
        installed = self.load()
        stale = []
        for layer in manifest:
            entry = installed.get(layer.name)
            if entry is None or entry.get("version") != layer.version:
                stale.append(layer)
        return stale

    def commit(self, name: str, version: str) -> None:
        data = self.load()
        data[name] = {"version": version, "installedAt": _now_iso()}
        self._write(data)
        logger.debug("ledger: %s@%s gravado", name, version)

    def forget(self, name: str) -> bool:
        data = self.load()
        if name not in data:
            return False
        del data[name]
        self._write(data)
        return True

    def describe_change(self, layer) -> str:
        """Texto curto para o log: 'new', 'upgrade 1.0 -> 1.1', 'downgrade ...' ou 'replace ...'."""
        current = self.installed_version(layer.name)
        if current is None:
            return f"new {layer.version}"
        old, new = _parse_version(current), _parse_version(layer.version)
        if old is not None and new is not None and old != new:
            kind = "upgrade" if new > old else "downgrade"
        else:
            kind = "replace"
        return f"{kind} {current} -> {layer.version}"

    def _write(self, data: Dict) -> None:
        os.makedirs(self.rootfs_dir, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
