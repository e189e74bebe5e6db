#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/sandbox.py — Construção de comandos proot.

- Classe Sandbox com rootfs, binds /dev /proc /sys e diretório de trabalho
- Ambiente do host: LD_LIBRARY_PATH, PROOT_TMP_DIR, PROOT_LOADER
- Ambiente do convidado via /usr/bin/env (HOME, PATH, NODE_OPTIONS)
- command() é puro: não toca disco nem processos
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from lilroot.modules import config, log

logger = log.get_logger("sandbox")

GUEST_HOME = "/root"
GUEST_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
COMPAT_SHIM = "/root/android-compat.cjs"
BINDS = ["/dev", "/proc", "/sys"]


@dataclass
class SandboxCommand:
    argv: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    def __str__(self) -> str:
        return shlex.join(self.argv)


# ---------------------------
# Classe principal
# ---------------------------
class Sandbox:
    def __init__(self, rootfs_dir: Optional[str] = None,
                 lib_dir: Optional[str] = None,
                 native_lib_dir: Optional[str] = None,
                 cache_dir: Optional[str] = None):
        """
        :param rootfs_dir: rootfs montado pelas camadas
        :param lib_dir: libs privadas (libtalloc.so.2)
        :param native_lib_dir: onde ficam libproot.so e libproot_loader.so
        :param cache_dir: diretório temporário do proot
        """
        p = config.paths()
        self.rootfs_dir = rootfs_dir or p["rootfs_dir"]
        self.lib_dir = lib_dir or p["lib_dir"]
        self.native_lib_dir = native_lib_dir or p["native_lib_dir"]
        self.cache_dir = cache_dir or p["cache_dir"]

    @property
    def proot(self) -> str:
        return os.path.join(self.native_lib_dir, "libproot.so")

    @property
    def loader(self) -> str:
        return os.path.join(self.native_lib_dir, "libproot_loader.so")

    def host_env(self) -> Dict[str, str]:
        return {
            "LD_LIBRARY_PATH": f"{self.lib_dir}:{self.native_lib_dir}",
            "PROOT_TMP_DIR": self.cache_dir,
            "PROOT_LOADER": self.loader,
        }

    def command(self, cmdline: str, workdir: str = GUEST_HOME,
                extra_env: Optional[Dict[str, str]] = None) -> SandboxCommand:
        """Monta argv/env/cwd para executar cmdline dentro do rootfs."""
        argv = [self.proot, "--link2symlink", "-0", "-r", self.rootfs_dir]
        for b in BINDS:
            argv += ["-b", b]
        argv += ["-w", workdir, "/usr/bin/env",
                 f"HOME={GUEST_HOME}",
                 f"PATH={GUEST_PATH}",
                 f"NODE_OPTIONS=--require {COMPAT_SHIM}"]
        for key, value in (extra_env or {}).items():
            argv.append(f"{key}={value}")
        argv += shlex.split(cmdline)
        return SandboxCommand(argv=argv, env=self.host_env(), cwd=self.rootfs_dir)

    # ---------------------------
    # Diagnóstico
    # ---------------------------
    def engine_available(self) -> bool:
        return os.path.isfile(self.proot)

    def prepare(self) -> bool:
        """Garante bit de execução no proot; False se o binário não existe."""
        if not self.engine_available():
            logger.warning("proot não encontrado em %s", self.proot)
            return False
        try:
            os.chmod(self.proot, os.stat(self.proot).st_mode | 0o111)
        except OSError as e:
            logger.warning("chmod falhou em %s: %s", self.proot, e)
        return True

    def describe(self) -> Dict[str, object]:
        return {
            "proot": self.proot,
            "proot_present": self.engine_available(),
            "loader_present": os.path.isfile(self.loader),
            "rootfs": self.rootfs_dir,
            "env": self.host_env(),
        }
