#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
errors.py — Hierarquia de exceções do lilroot.

Toda exceção carrega um ErrorKind; quem chama decide pela categoria,
não pelo texto da mensagem:

- TRANSIENT: falha de rede absorvida localmente (fallback do manifesto)
- LAYER: camada não baixou ou não extraiu; aborta a execução
- PROCESS_STARTUP: processo supervisionado morreu ou nunca respondeu
- CORRUPTION: estado persistido ilegível; tratado como "não instalado"
- ROOTFS: a árvore montada não tem os binários obrigatórios
"""

from __future__ import annotations

import enum
from typing import Optional

__all__ = [
    "ErrorKind",
    "LilrootError",
    "LayerError",
    "DownloadError",
    "ExtractionError",
    "ProcessStartupError",
    "ReadinessTimeout",
    "RootfsIncompleteError",
    "LedgerCorruptError",
    "InvalidTransition",
]


class ErrorKind(enum.Enum):
    TRANSIENT = "transient"
    LAYER = "layer"
    PROCESS_STARTUP = "process_startup"
    CORRUPTION = "corruption"
    ROOTFS = "rootfs"


class LilrootError(RuntimeError):
    """Base exception; ``kind`` tags the failure category."""

    kind: ErrorKind = ErrorKind.TRANSIENT


class LayerError(LilrootError):
    """A single layer could not be materialized."""

    kind = ErrorKind.LAYER

    def __init__(self, message: str, *, layer: Optional[str] = None) -> None:
        super().__init__(message)
        self.layer = layer


class DownloadError(LayerError):
    """Raised when fetching a layer archive fails (network, HTTP status, disk)."""

    def __init__(
        self,
        message: str,
        *,
        layer: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, layer=layer)
        self.status_code = status_code


class ExtractionError(LayerError):
    """Raised when unpacking an archive exits non-zero or the archive is unreadable."""

    def __init__(
        self,
        message: str,
        *,
        layer: Optional[str] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ) -> None:
        super().__init__(message, layer=layer)
        self.returncode = returncode
        self.output = output


class ProcessStartupError(LilrootError):
    """A supervised process exited (or was never spawned) before becoming ready."""

    kind = ErrorKind.PROCESS_STARTUP

    def __init__(self, message: str, *, role: Optional[str] = None, detail: str = "") -> None:
        super().__init__(message)
        self.role = role
        self.detail = detail

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base}\n{self.detail}" if self.detail else base


class ReadinessTimeout(ProcessStartupError):
    """The readiness deadline passed without an HTTP answer."""

    def __init__(
        self,
        message: str,
        *,
        role: Optional[str] = None,
        detail: str = "",
        last_error: Optional[str] = None,
    ) -> None:
        super().__init__(message, role=role, detail=detail)
        self.last_error = last_error


class RootfsIncompleteError(LilrootError):
    """Raised when the assembled tree lacks the marker binaries after provisioning."""

    kind = ErrorKind.ROOTFS


class LedgerCorruptError(LilrootError):
    """The ledger file exists but is not a JSON object."""

    kind = ErrorKind.CORRUPTION


class InvalidTransition(LilrootError):
    """Programming error: a state change the state machine does not allow."""
