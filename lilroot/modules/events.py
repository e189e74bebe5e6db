#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
events.py — Canais observáveis publicados pelo orquestrador.

- StateChannel: último valor (estado, progresso) + notificação aos assinantes
- LogFeed: linhas de log em buffer circular limitado
- Assinantes são callables chamados na thread que publica; um assinante
  que falha é logado e ignorado
"""
from __future__ import annotations

from collections import deque
from threading import Lock
from typing import Any, Callable, Deque, Generic, List, TypeVar

from lilroot.modules import log

logger = log.get_logger("events")

T = TypeVar("T")


class _Subscribers:
    def __init__(self) -> None:
        self._lock = Lock()
        self._callbacks: List[Callable[[Any], None]] = []

    def add(self, cb: Callable[[Any], None]) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(cb)

        def _unsubscribe() -> None:
            with self._lock:
                if cb in self._callbacks:
                    self._callbacks.remove(cb)

        return _unsubscribe

    def notify(self, value: Any) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for cb in callbacks:
            try:
                cb(value)
            except Exception:
                logger.exception("subscriber %r failed", cb)


class StateChannel(Generic[T]):
    """Latest-value channel with change notification."""

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._lock = Lock()
        self._subs = _Subscribers()

    @property
    def value(self) -> T:
        with self._lock:
            return self._value

    def publish(self, value: T) -> None:
        with self._lock:
            self._value = value
        self._subs.notify(value)

    def subscribe(self, cb: Callable[[T], None], replay: bool = True) -> Callable[[], None]:
        """Register cb; with replay the current value is delivered immediately."""
        unsubscribe = self._subs.add(cb)
        if replay:
            try:
                cb(self.value)
            except Exception:
                logger.exception("subscriber %r failed on replay", cb)
        return unsubscribe


class LogFeed:
    """Bounded ring buffer of human-readable lines (oldest dropped first)."""

    def __init__(self, maxlen: int = 200, logger_name: str = "feed") -> None:
        self._lines: Deque[str] = deque(maxlen=maxlen)
        self._lock = Lock()
        self._subs = _Subscribers()
        self._logger = log.get_logger(logger_name)

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)
        self._logger.info("%s", line)
        self._subs.notify(line)

    __call__ = append

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()

    def subscribe(self, cb: Callable[[str], None]) -> Callable[[], None]:
        return self._subs.add(cb)
