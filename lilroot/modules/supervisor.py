#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
supervisor.py — Processos de longa duração dentro do sandbox.

- Um processo por papel ("gateway", "ui"); start() é idempotente enquanto vivo
- Saída stdout+stderr drenada por thread daemon durante toda a vida do processo
- Linhas com palavras de prontidão/erro vão para o log sink
- stop(): SIGTERM, espera grace, depois SIGKILL
"""

from __future__ import annotations

import os
import re
import subprocess
import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from lilroot.modules import log
from lilroot.modules.sandbox import SandboxCommand

logger = log.get_logger("supervisor")

READY_PATTERN = re.compile(r"listening on|running at|\bready\b")
ERROR_MARKERS = ("error", "failed", "exception", "fatal")
TAIL_LINES = 50


def is_error_line(line: str) -> bool:
    lower = line.lower()
    return any(m in lower for m in ERROR_MARKERS)


def is_ready_line(line: str) -> bool:
    """Palavra "ready" inteira; linha de erro nunca conta ("address already in use")."""
    if is_error_line(line):
        return False
    return READY_PATTERN.search(line.lower()) is not None


class ProcessHandle:
    def __init__(self, role: str, proc: subprocess.Popen,
                 log_sink: Optional[Callable[[str], None]] = None,
                 tail_lines: int = TAIL_LINES):
        self.role = role
        self.proc = proc
        self.ready = threading.Event()
        self._sink = log_sink
        self._tail: Deque[str] = deque(maxlen=tail_lines)
        self._lock = threading.Lock()
        self._drain = threading.Thread(target=self._drain_output, name=f"drain-{role}", daemon=True)
        self._drain.start()

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.poll()

    def is_alive(self) -> bool:
        return self.proc.poll() is None

    def _drain_output(self) -> None:
        stream = self.proc.stdout
        if stream is None:
            return
        try:
            for raw in iter(stream.readline, ""):
                line = raw.rstrip()
                if not line:
                    continue
                with self._lock:
                    self._tail.append(line)
                is_ready = is_ready_line(line)
                if is_ready:
                    self.ready.set()
                if self._sink and (is_ready or is_error_line(line)):
                    self._sink(f"[{self.role}] {line}")
                logger.debug("[%s] %s", self.role, line)
        except (OSError, ValueError) as e:
            # stream fechado durante o kill
            logger.debug("drain %s encerrado: %s", self.role, e)
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def tail(self) -> List[str]:
        with self._lock:
            return list(self._tail)

    def failure_detail(self, lines: int = 5) -> str:
        """Últimas linhas (preferindo as de erro) + código de saída."""
        tail = self.tail()
        errors = [l for l in tail if is_error_line(l)]
        picked = (errors or tail)[-lines:]
        rc = self.returncode
        status = "still running" if rc is None else f"exit code {rc}"
        return "\n".join(picked + [f"({self.role}: {status})"])

    def join_output(self, timeout: Optional[float] = None) -> None:
        self._drain.join(timeout)


class ProcessSupervisor:
    def __init__(self, log_sink: Optional[Callable[[str], None]] = None):
        self.log_sink = log_sink
        self._handles: Dict[str, ProcessHandle] = {}
        # handles já removidos da tabela mas ainda no meio do stop()
        self._stopping: List[ProcessHandle] = []
        self._lock = threading.Lock()

    def get(self, role: str) -> Optional[ProcessHandle]:
        with self._lock:
            return self._handles.get(role)

    def is_alive(self, role: str) -> bool:
        handle = self.get(role)
        return handle is not None and handle.is_alive()

    def start(self, role: str, command: SandboxCommand) -> ProcessHandle:
        with self._lock:
            current = self._handles.get(role)
            if current is not None and current.is_alive():
                logger.info("%s já em execução (pid %s)", role, current.pid)
                return current
            env = {**os.environ, **command.env}
            logger.info("Iniciando %s: %s", role, command)
            proc = subprocess.Popen(
                command.argv,
                cwd=command.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
            )
            handle = ProcessHandle(role, proc, self.log_sink)
            self._handles[role] = handle
            return handle

    def stop(self, role: str, grace: float = 5.0) -> bool:
        with self._lock:
            handle = self._handles.pop(role, None)
            if handle is None:
                return False
            self._stopping.append(handle)
        # espera fora do lock: force_stop_all() continua podendo matar este handle
        proc = handle.proc
        try:
            if proc.poll() is None:
                logger.info("Parando %s (pid %s)", role, proc.pid)
                proc.terminate()
                try:
                    proc.wait(timeout=grace)
                except subprocess.TimeoutExpired:
                    logger.warning("%s ignorou SIGTERM por %.1fs, enviando SIGKILL", role, grace)
                    proc.kill()
                    proc.wait()
        finally:
            with self._lock:
                if handle in self._stopping:
                    self._stopping.remove(handle)
        handle.join_output(timeout=1.0)
        return True

    def stop_all(self, grace: float = 5.0) -> None:
        with self._lock:
            roles = list(self._handles)
        # ordem reversa: o secundário depende do primário
        for role in reversed(roles):
            self.stop(role, grace)

    def force_stop_all(self) -> None:
        with self._lock:
            handles = list(self._handles.values()) + list(self._stopping)
            self._handles.clear()
        for handle in handles:
            if handle.is_alive():
                logger.warning("SIGKILL em %s (pid %s)", handle.role, handle.pid)
                handle.proc.kill()
                handle.proc.wait()

    def roles(self) -> List[str]:
        with self._lock:
            return list(self._handles)
