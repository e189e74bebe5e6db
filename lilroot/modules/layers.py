#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
layers.py — Materialização das camadas do rootfs.

- Origem: asset embarcado (nome exato ou nome + ".bin") ou download remoto
- Download para arquivo temporário no cache, extração overlay no rootfs,
  temporário sempre removido
- Pós-instalação: permissões de execução e diretório de libs (libtalloc.so.2)
- ProgressTracker: progresso agregado ponderado por bytes, monotônico,
  limitado a um teto (0.7 da barra total)

O ledger NÃO é tocado aqui: quem chama grava a entrada após o sucesso.
"""

from __future__ import annotations

import os
import shutil
import stat
import threading
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from lilroot.modules import config, log
from lilroot.modules.errors import DownloadError, ExtractionError, LayerError
from lilroot.modules.ledger import VersionLedger
from lilroot.modules.manifest import LayerSpec
from lilroot.modules.utils import download, ensure_dir, extract_tarball

logger = log.get_logger("layers")

PHASE_DOWNLOADING = "downloading"
PHASE_EXTRACTING = "extracting"

BIN_DIRS = ["bin", "usr/bin", "usr/local/bin", "lib"]
KNOWN_BINARIES = ["usr/bin/node", "usr/local/bin/openclaw", "bin/sh", "bin/bash"]


def _chmod_x(path: str) -> bool:
    try:
        mode = os.stat(path).st_mode
        os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return True
    except OSError:
        return False


# -------------------------
# Progresso agregado
# -------------------------
class ProgressTracker:
    """
    Progresso de provisionamento em [0, ceiling].

    valor = (bytes concluídos + tamanho_da_camada * fração) / total * ceiling
    Com total 0 (manifesto sem tamanhos) usa a contagem de camadas.
    """

    def __init__(self, layers: Sequence[LayerSpec], ceiling: float = 0.7):
        self.ceiling = ceiling
        self.total_bytes = sum(max(layer.size_bytes, 0) for layer in layers)
        self.total_layers = len(layers)
        self.completed_bytes = 0
        self.completed_layers = 0
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def _advance(self, candidate: float) -> float:
        with self._lock:
            candidate = min(candidate, self.ceiling)
            if candidate > self._value:
                self._value = candidate
            return self._value

    def _fraction(self, done_bytes: float, done_layers: float) -> float:
        if self.total_bytes > 0:
            return done_bytes / self.total_bytes
        if self.total_layers > 0:
            return done_layers / self.total_layers
        return 1.0

    def partial(self, layer: LayerSpec, fraction: float) -> float:
        fraction = min(max(fraction, 0.0), 1.0)
        done = self._fraction(
            self.completed_bytes + max(layer.size_bytes, 0) * fraction,
            self.completed_layers + fraction,
        )
        return self._advance(done * self.ceiling)

    def complete(self, layer: LayerSpec) -> float:
        self.completed_bytes += max(layer.size_bytes, 0)
        self.completed_layers += 1
        done = self._fraction(self.completed_bytes, self.completed_layers)
        return self._advance(done * self.ceiling)


# -------------------------
# Provisionador
# -------------------------
class LayerProvisioner:
    def __init__(self,
                 rootfs_dir: Optional[str] = None,
                 assets_dir: Optional[str] = None,
                 cache_dir: Optional[str] = None,
                 lib_dir: Optional[str] = None,
                 native_lib_dir: Optional[str] = None,
                 session=None,
                 timeouts: Optional[Tuple[float, float]] = None,
                 ready_markers: Optional[Iterable[str]] = None):
        p = config.paths()
        self.rootfs_dir = rootfs_dir or p["rootfs_dir"]
        self.assets_dir = assets_dir or p["assets_dir"]
        self.cache_dir = cache_dir or p["cache_dir"]
        self.lib_dir = lib_dir or p["lib_dir"]
        self.native_lib_dir = native_lib_dir or p["native_lib_dir"]
        self.session = session
        self.timeouts = timeouts or (config.get("connect_timeout"), config.get("read_timeout"))
        self.ready_markers = list(ready_markers or config.get("ready_markers"))
        self.ledger = VersionLedger(self.rootfs_dir)

    # ---------------------------
    # Origem
    # ---------------------------
    def resolve_source(self, layer: LayerSpec) -> Optional[str]:
        """Caminho do asset embarcado, ou None se a camada precisa ser baixada."""
        if not layer.source_asset or not self.assets_dir:
            return None
        for candidate in (layer.source_asset, layer.source_asset + ".bin"):
            path = os.path.join(self.assets_dir, candidate)
            if os.path.isfile(path):
                return path
        return None

    def temp_path(self, layer: LayerSpec) -> str:
        return os.path.join(self.cache_dir, f"{layer.name}.tar.gz")

    def download(self, layer: LayerSpec, on_progress: Optional[Callable[[float], None]] = None) -> str:
        ensure_dir(self.cache_dir)
        dest = self.temp_path(layer)
        logger.info("Baixando %s (%s) de %s", layer.label, layer.display_size, layer.fallback_url)
        try:
            download(layer.fallback_url, dest,
                     on_progress=on_progress,
                     session=self.session,
                     timeout=tuple(self.timeouts),
                     expected_size=layer.size_bytes)
        except DownloadError as e:
            e.layer = layer.name
            raise
        return dest

    # ---------------------------
    # Provisionamento
    # ---------------------------
    def provision(self, layer: LayerSpec,
                  on_phase: Optional[Callable[[str], None]] = None,
                  on_progress: Optional[Callable[[float], None]] = None) -> str:
        """
        Materializa uma camada no rootfs. Retorna a origem usada
        ("asset" ou "remote"). Levanta LayerError em falha.
        """
        source = self.resolve_source(layer)
        temp_path = None
        origin = "asset"
        try:
            if source is None:
                origin = "remote"
                # download parcial também é apagado no finally
                temp_path = self.temp_path(layer)
                if on_phase:
                    on_phase(PHASE_DOWNLOADING)
                source = self.download(layer, on_progress)
            else:
                logger.info("Usando asset embarcado para %s: %s", layer.label, source)

            if on_phase:
                on_phase(PHASE_EXTRACTING)
            try:
                extract_tarball(source, self.rootfs_dir)
            except ExtractionError as e:
                e.layer = layer.name
                raise
        except LayerError:
            raise
        except OSError as e:
            raise LayerError(f"falha materializando {layer.label}: {e}", layer=layer.name) from e
        finally:
            if temp_path and os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError as e:
                    logger.warning("Não foi possível remover %s: %s", temp_path, e)

        if on_progress:
            on_progress(1.0)
        return origin

    # ---------------------------
    # Pós-instalação
    # ---------------------------
    def ensure_executable(self) -> int:
        """chmod +x nos binários conhecidos e nos diretórios bin/lib do rootfs."""
        count = 0
        for rel in KNOWN_BINARIES:
            path = os.path.join(self.rootfs_dir, rel)
            if os.path.isfile(path) and _chmod_x(path):
                count += 1
        for rel in BIN_DIRS:
            count += self._chmod_dir(os.path.join(self.rootfs_dir, rel))
        count += self._chmod_dir(os.path.join(self.rootfs_dir, "usr/lib"), only_shared=True)
        logger.debug("ensure_executable: %d arquivos", count)
        return count

    def _chmod_dir(self, directory: str, only_shared: bool = False) -> int:
        if not os.path.isdir(directory):
            return 0
        count = 0
        for entry in os.scandir(directory):
            if entry.is_symlink() or not entry.is_file():
                continue
            if only_shared and ".so" not in entry.name:
                continue
            if _chmod_x(entry.path):
                count += 1
        return count

    def setup_lib_dir(self) -> List[str]:
        """
        proot procura libtalloc.so.2; a lib nativa é empacotada como libtalloc.so.
        Copia para o lib dir privado, o diretório nativo e <rootfs>/usr/lib.
        Falhas aqui são só avisos.
        """
        src = os.path.join(self.native_lib_dir, "libtalloc.so")
        if not os.path.isfile(src):
            logger.warning("libtalloc.so não encontrada em %s", self.native_lib_dir)
            return []
        written = []
        for target_dir in (self.lib_dir, self.native_lib_dir, os.path.join(self.rootfs_dir, "usr/lib")):
            dest = os.path.join(target_dir, "libtalloc.so.2")
            try:
                ensure_dir(target_dir)
                if not os.path.exists(dest):
                    shutil.copy2(src, dest)
                written.append(dest)
            except OSError as e:
                logger.warning("Não foi possível criar %s: %s", dest, e)
        return written

    def is_ready(self) -> bool:
        """Ledger presente e binários essenciais no rootfs."""
        if not self.ledger.exists:
            return False
        return all(os.path.exists(os.path.join(self.rootfs_dir, m)) for m in self.ready_markers)

    def missing_markers(self) -> List[str]:
        return [m for m in self.ready_markers if not os.path.exists(os.path.join(self.rootfs_dir, m))]

    def status(self) -> Dict:
        installed = self.ledger.load()
        return {
            "rootfs": self.rootfs_dir,
            "ready": self.is_ready(),
            "missing": self.missing_markers(),
            "layers": installed,
        }

