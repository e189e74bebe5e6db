"""
readiness.py — Espera por um serviço HTTP local.

Qualquer resposta HTTP (100-499) em http://127.0.0.1:<port>/ conta como
pronto; 5xx e erros de conexão não. A espera é sempre limitada por timeout.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Tuple

import requests

from lilroot.modules import log
from lilroot.modules.errors import ProcessStartupError, ReadinessTimeout

logger = log.get_logger("readiness")


class ReadinessPoller:
    def __init__(self, interval: float = 0.5, probe_timeout: float = 2.0,
                 session=None, host: str = "127.0.0.1"):
        self.interval = interval
        self.probe_timeout = probe_timeout
        if session is None:
            # sonda local nunca passa por proxy do ambiente
            session = requests.Session()
            session.trust_env = False
        self.session = session
        self.host = host

    def url(self, port: int) -> str:
        return f"http://{self.host}:{port}/"

    def probe(self, port: int) -> Tuple[bool, Optional[str]]:
        try:
            r = self.session.get(self.url(port), timeout=self.probe_timeout, allow_redirects=False)
            try:
                if 100 <= r.status_code < 500:
                    return True, None
                return False, f"HTTP {r.status_code}"
            finally:
                r.close()
        except requests.RequestException as e:
            return False, f"{type(e).__name__}: {e}"

    def wait_until_ready(self, port: int, timeout: float,
                         ready_hint: Optional[threading.Event] = None,
                         alive: Optional[Callable[[], bool]] = None,
                         role: Optional[str] = None) -> str:
        """
        Retorna "http" ou "hint" conforme o sinal que chegou primeiro.
        Levanta ProcessStartupError se alive() virar False e
        ReadinessTimeout ao fim do prazo.
        """
        deadline = time.monotonic() + timeout
        last_error: Optional[str] = None
        label = role or f"port {port}"
        while True:
            if alive is not None and not alive():
                raise ProcessStartupError(f"{label} exited before becoming ready", role=role)
            if ready_hint is not None and ready_hint.is_set():
                logger.debug("%s sinalizou prontidão pela saída", label)
                return "hint"
            ok, last_error = self.probe(port)
            if ok:
                logger.debug("%s respondeu em %s", label, self.url(port))
                return "http"
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadinessTimeout(
                    f"{label} not reachable on port {port} after {timeout:g}s (last error: {last_error})",
                    role=role, last_error=last_error)
            wait = min(self.interval, remaining)
            if ready_hint is not None:
                ready_hint.wait(wait)
            else:
                time.sleep(wait)
