"""
manifest.py — Resolução do manifesto de camadas do rootfs.

- Busca o manifest.json publicado junto das camadas (um GET, timeout curto)
- Valida campos obrigatórios de cada camada
- Qualquer falha (rede, status, JSON, campo ausente) devolve FALLBACK_LAYERS;
  esta função nunca levanta exceção para quem chama
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional

import requests

from lilroot.modules import config, log
from lilroot.modules.utils import format_size

logger = log.get_logger("manifest")

REQUIRED_FIELDS = ["name", "file", "version"]


def version_from_filename(filename: str) -> str:
    """base-arm64-2.0.0.tar.gz -> 2.0.0"""
    stem = filename[:-len(".tar.gz")] if filename.endswith(".tar.gz") else filename
    return stem.rsplit("-", 1)[-1]


@dataclass(frozen=True)
class LayerSpec:
    name: str
    source_asset: Optional[str]
    fallback_url: str
    size_bytes: int
    display_size: str
    version: str = field(default="")

    def __post_init__(self):
        if not self.version:
            object.__setattr__(self, "version", version_from_filename(self.source_asset or self.fallback_url.rsplit("/", 1)[-1]))

    @property
    def label(self) -> str:
        return f"{self.name}@{self.version}"


def _layer(name: str, filename: str, size: int, display: str, base: str = config.RELEASES_BASE) -> LayerSpec:
    return LayerSpec(name, filename, f"{base}/{filename}", size, display)


# Usadas só quando o manifesto não pode ser obtido
FALLBACK_LAYERS: List[LayerSpec] = [
    _layer("base", "base-arm64-2.0.0.tar.gz", 42_713_180, "41 MB"),
    _layer("openclaw", "openclaw-2026.2.17-bundled.tar.gz", 43_335_483, "42 MB"),
    _layer("chatspa", "chatspa-0.7.0.tar.gz", 250_034, "244 KB"),
    _layer("config", "config-0.2.0.tar.gz", 2_815, "3 KB"),
]


class ManifestError(ValueError):
    """Documento de manifesto inválido (uso interno; nunca escapa de fetch_manifest)"""


def parse_manifest(data, releases_base: str) -> List[LayerSpec]:
    if not isinstance(data, dict) or not isinstance(data.get("layers"), list):
        raise ManifestError("campo 'layers' ausente")
    layers = []
    for entry in data["layers"]:
        if not isinstance(entry, dict):
            raise ManifestError(f"camada inválida: {entry!r}")
        for key in REQUIRED_FIELDS:
            if not isinstance(entry.get(key), str) or not entry[key]:
                raise ManifestError(f"campo obrigatório '{key}' ausente em {entry!r}")
        try:
            size = int(entry.get("size") or 0)
        except (TypeError, ValueError) as e:
            raise ManifestError(f"size inválido em {entry!r}") from e
        layers.append(LayerSpec(
            name=entry["name"],
            source_asset=entry["file"],
            fallback_url=f"{releases_base.rstrip('/')}/{entry['file']}",
            size_bytes=size,
            display_size=format_size(size),
            version=entry["version"],
        ))
    if not layers:
        raise ManifestError("manifesto sem camadas")
    return layers


def fetch_manifest(log_sink: Optional[Callable[[str], None]] = None,
                   url: Optional[str] = None,
                   session=None,
                   timeout: Optional[float] = None,
                   releases_base: Optional[str] = None) -> List[LayerSpec]:
    """Retorna as camadas do manifesto remoto, ou FALLBACK_LAYERS em qualquer falha."""
    url = url or config.get("manifest_url")
    timeout = timeout or config.get("manifest_timeout")
    releases_base = releases_base or config.get("releases_base")
    http = session or requests
    try:
        r = http.get(url, timeout=timeout)
        try:
            if r.status_code != 200:
                logger.warning("manifesto HTTP %s em %s, usando fallback", r.status_code, url)
                return list(FALLBACK_LAYERS)
            layers = parse_manifest(r.json(), releases_base)
        finally:
            r.close()
    except Exception as e:
        # rede, timeout, JSON malformado, ManifestError: sempre fallback
        logger.warning("Falha ao obter manifesto: %s", e)
        return list(FALLBACK_LAYERS)

    if log_sink:
        log_sink("Manifest: " + ", ".join(layer.label for layer in layers))
    return layers
