#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/bootstrap.py  —  Bootstrap manager (orquestrador)

Sequência completa ("bootstrap"):
    Preparing -> manifesto -> camadas desatualizadas (por camada:
    Preparing -> [Downloading] -> Extracting -> commit no ledger)
    -> pós-instalação -> Starting (config + gateway) -> readiness
    -> WaitingForSecondaryProcess (UI) -> readiness -> Running

Reinício rápido ("quick start"):
    manifesto ainda em Idle; sem camadas desatualizadas refaz só o
    pós-instalação e vai para Starting, senão reprovisiona só as desatualizadas.

Em Running um monitor vigia os processos: saída inesperada vira Error e,
após restart_delay, um novo quick start (até max_restarts seguidos).

- Um único worker em background, não reentrante
- Estado, progresso e log publicados em canais observáveis (events.py)
- Falha aborta a execução; o rootfs fica como está para o retry pular
  as camadas já registradas no ledger
- Faixas de progresso: camadas 0-0.70, config+gateway até 0.90, UI até 1.0

Uso rápido:
    from lilroot.modules.bootstrap import BootstrapManager
    with BootstrapManager() as bm:
        bm.logs.subscribe(print)
        bm.bootstrap()
        bm.wait()
"""

from __future__ import annotations

import enum
import os
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from lilroot.modules import config, log
from lilroot.modules.errors import (
    InvalidTransition,
    LilrootError,
    ProcessStartupError,
    RootfsIncompleteError,
)
from lilroot.modules.events import LogFeed, StateChannel
from lilroot.modules.gateway_config import GatewayConfig, write_compat_shim, write_gateway_config
from lilroot.modules.layers import PHASE_DOWNLOADING, LayerProvisioner, ProgressTracker
from lilroot.modules.ledger import VersionLedger
from lilroot.modules.manifest import LayerSpec, fetch_manifest
from lilroot.modules.readiness import ReadinessPoller
from lilroot.modules.sandbox import Sandbox
from lilroot.modules.supervisor import ProcessHandle, ProcessSupervisor

logger = log.get_logger("bootstrap")

GATEWAY = "gateway"
UI = "ui"

GATEWAY_CMD = "node /usr/local/bin/openclaw gateway run --allow-unconfigured --port {port} --token {token}"
UI_CMD = "node /root/lilclaw-ui/serve-ui.cjs"
UI_SCRIPT_REL = "root/lilclaw-ui/serve-ui.cjs"

PROVISION_CEILING = 0.70
CONFIG_WRITTEN = 0.75
PRIMARY_READY = 0.90


class BootstrapState(enum.Enum):
    IDLE = "Idle"
    PREPARING = "Preparing"
    DOWNLOADING = "Downloading"
    EXTRACTING = "Extracting"
    STARTING = "Starting"
    WAITING_FOR_SECONDARY = "WaitingForSecondaryProcess"
    RUNNING = "Running"
    ERROR = "Error"


S = BootstrapState

# ERROR é alcançável de qualquer estado; IDLE só via stop()
ALLOWED: Dict[BootstrapState, frozenset] = {
    S.IDLE: frozenset({S.PREPARING, S.STARTING}),
    S.PREPARING: frozenset({S.DOWNLOADING, S.EXTRACTING, S.STARTING}),
    S.DOWNLOADING: frozenset({S.EXTRACTING}),
    S.EXTRACTING: frozenset({S.PREPARING, S.STARTING}),
    S.STARTING: frozenset({S.WAITING_FOR_SECONDARY}),
    S.WAITING_FOR_SECONDARY: frozenset({S.RUNNING}),
    S.RUNNING: frozenset(),
    S.ERROR: frozenset({S.PREPARING, S.STARTING}),
}


@dataclass(frozen=True)
class StateSnapshot:
    state: BootstrapState
    message: str = ""

    def __str__(self) -> str:
        if self.state is S.ERROR:
            return f"Error({self.message})"
        return self.state.value


class _Cancelled(Exception):
    """stop() chegou durante a execução"""


# BootstrapManager -----------------------------------------------------------

class BootstrapManager:
    def __init__(self, cfg: Optional[Dict] = None, *,
                 resolver: Optional[Callable[[Callable[[str], None]], List[LayerSpec]]] = None,
                 ledger: Optional[VersionLedger] = None,
                 provisioner: Optional[LayerProvisioner] = None,
                 sandbox: Optional[Sandbox] = None,
                 supervisor: Optional[ProcessSupervisor] = None,
                 poller: Optional[ReadinessPoller] = None):
        self.cfg = {**config.all(), **(cfg or {})}
        p = config.paths(self.cfg)
        self.rootfs_dir = p["rootfs_dir"]

        self.logs = LogFeed(maxlen=int(self._opt("log_buffer_lines")), logger_name="bootstrap.feed")
        self.state: StateChannel[StateSnapshot] = StateChannel(StateSnapshot(S.IDLE))
        self.progress: StateChannel[float] = StateChannel(0.0)
        self.last_error: Optional[BaseException] = None

        self.resolver = resolver or self._default_resolver
        self.provisioner = provisioner or LayerProvisioner(
            rootfs_dir=p["rootfs_dir"],
            assets_dir=p["assets_dir"],
            cache_dir=p["cache_dir"],
            lib_dir=p["lib_dir"],
            native_lib_dir=p["native_lib_dir"],
            timeouts=(self._opt("connect_timeout"), self._opt("read_timeout")),
            ready_markers=self._opt("ready_markers"),
        )
        self.ledger = ledger or VersionLedger(self.rootfs_dir)
        self.sandbox = sandbox or Sandbox(
            rootfs_dir=p["rootfs_dir"],
            lib_dir=p["lib_dir"],
            native_lib_dir=p["native_lib_dir"],
            cache_dir=p["cache_dir"],
        )
        self.supervisor = supervisor or ProcessSupervisor(self.logs.append)
        self.poller = poller or ReadinessPoller(interval=float(self._opt("poll_interval")))

        self._gw_cfg: Optional[GatewayConfig] = None
        self._ui_started = False
        self._worker: Optional[threading.Thread] = None
        self._monitor: Optional[threading.Thread] = None
        self._generation = 0
        self._restarts = 0
        self._launch_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._progress_lock = threading.Lock()
        self._cancel = threading.Event()

    # ---------------------------
    # Helpers
    # ---------------------------
    def _opt(self, key: str):
        value = self.cfg.get(key)
        return config.DEFAULTS.get(key) if value is None else value

    def _default_resolver(self, log_sink: Callable[[str], None]) -> List[LayerSpec]:
        return fetch_manifest(
            log_sink,
            url=self._opt("manifest_url"),
            timeout=self._opt("manifest_timeout"),
            releases_base=self._opt("releases_base"),
        )

    def _emit(self, line: str) -> None:
        self.logs.append(line)

    @property
    def current(self) -> StateSnapshot:
        return self.state.value

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise _Cancelled()

    def _transition(self, target: BootstrapState, message: str = "",
                    progress: Optional[float] = None) -> None:
        with self._state_lock:
            self._check_cancelled()
            current = self.state.value.state
            if target is not S.ERROR and target not in ALLOWED[current]:
                raise InvalidTransition(f"{current.value} -> {target.value} não permitido")
            self.state.publish(StateSnapshot(target, message if target is S.ERROR else ""))
        if progress is not None:
            self._set_progress(progress)
        self._emit(message or target.value)

    def _set_progress(self, value: float) -> None:
        with self._progress_lock:
            # stop() já zerou; worker cancelado não publica mais
            if self._cancel.is_set():
                return
            if value > self.progress.value:
                self.progress.publish(min(value, 1.0))

    def _reset_progress(self) -> None:
        with self._progress_lock:
            self.progress.publish(0.0)

    def processes_alive(self) -> bool:
        if not self.supervisor.is_alive(GATEWAY):
            return False
        return not self._ui_started or self.supervisor.is_alive(UI)

    # ---------------------------
    # Entradas públicas
    # ---------------------------
    def bootstrap(self, gw_cfg: Optional[GatewayConfig] = None) -> bool:
        """Provisionamento completo + start. False se já houver execução ativa."""
        self._restarts = 0
        if self.current.state is S.RUNNING:
            if self.processes_alive():
                logger.warning("bootstrap recusado: já em Running (use stop() antes)")
                return False
            self._mark_crashed()
        return self._launch(self._run_bootstrap, gw_cfg)

    def quick_start(self, gw_cfg: Optional[GatewayConfig] = None) -> bool:
        """Start rápido; no-op se já estiver rodando com os processos vivos."""
        self._restarts = 0
        if self.current.state is S.RUNNING:
            if self.processes_alive():
                self._emit("Already running")
                return True
            self._mark_crashed()
        return self._launch(self._run_quick_start, gw_cfg)

    def retry(self) -> bool:
        """Reentra em Preparing a partir de Error; só camadas desatualizadas são refeitas."""
        if self.current.state is not S.ERROR:
            logger.warning("retry ignorado: estado atual %s", self.current)
            return False
        self._restarts = 0
        return self._launch(self._run_bootstrap, self._gw_cfg)

    def stop(self, grace: Optional[float] = None) -> None:
        grace = float(self._opt("stop_grace") if grace is None else grace)
        self._cancel.set()
        self.supervisor.stop_all(grace)
        self._ui_started = False
        with self._state_lock:
            self.state.publish(StateSnapshot(S.IDLE))
        self._reset_progress()
        self._emit("Stopped")

    def shutdown(self, timeout: float = 5.0) -> None:
        """Encerramento anormal/saída do host: stop curto e SIGKILL no que sobrar."""
        self._cancel.set()
        self.supervisor.force_stop_all()
        self._ui_started = False
        with self._state_lock:
            self.state.publish(StateSnapshot(S.IDLE))
        self.wait(timeout)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Espera o worker terminar. True se não há execução ativa."""
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def is_busy(self) -> bool:
        worker = self._worker
        return worker is not None and worker.is_alive()

    def snapshot(self) -> Dict:
        return {
            "state": str(self.current),
            "progress": round(self.progress.value, 3),
            "gateway": self._pid(GATEWAY),
            "ui": self._pid(UI),
            "last_error": str(self.last_error) if self.last_error else None,
        }

    def _pid(self, role: str) -> Optional[int]:
        handle = self.supervisor.get(role)
        return handle.pid if handle is not None and handle.is_alive() else None

    def __enter__(self) -> "BootstrapManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # ---------------------------
    # Worker
    # ---------------------------
    def _launch(self, target: Callable[[Optional[GatewayConfig]], None],
                gw_cfg: Optional[GatewayConfig],
                generation: Optional[int] = None) -> bool:
        with self._launch_lock:
            if generation is not None and generation != self._generation:
                # outra execução começou depois do crash
                return False
            if self.is_busy():
                logger.warning("execução já em andamento, chamada recusada")
                return False
            self._generation += 1
            self._cancel.clear()
            self._worker = threading.Thread(
                target=self._run, args=(target, gw_cfg),
                name="lilroot-bootstrap", daemon=True)
            self._worker.start()
        return True

    def _run(self, target, gw_cfg: Optional[GatewayConfig]) -> None:
        try:
            target(gw_cfg)
        except _Cancelled:
            logger.info("execução cancelada por stop()")
            self.supervisor.stop_all(float(self._opt("stop_grace")))
        except Exception as e:
            if self._cancel.is_set():
                logger.info("execução interrompida por stop(): %s", e)
                self.supervisor.stop_all(float(self._opt("stop_grace")))
                return
            if not isinstance(e, LilrootError):
                logger.exception("erro inesperado no bootstrap")
            self._fail(e)

    def _fail(self, error: BaseException) -> None:
        self.last_error = error
        # processos iniciados nesta execução não ficam órfãos
        self.supervisor.stop_all(float(self._opt("stop_grace")))
        self._ui_started = False
        message = str(error) or type(error).__name__
        with self._state_lock:
            self.state.publish(StateSnapshot(S.ERROR, message))
        self._emit(f"Error: {message}")

    def _mark_crashed(self) -> None:
        dead = [r for r in (GATEWAY, UI) if self.supervisor.get(r) and not self.supervisor.is_alive(r)]
        for role in dead:
            for line in self.supervisor.get(role).failure_detail().splitlines():
                self._emit(f"[{role}] {line}")
        detail = ", ".join(f"{r} exited (code {self.supervisor.get(r).returncode})" for r in dead)
        self.supervisor.stop_all(float(self._opt("stop_grace")))
        self._ui_started = False
        with self._state_lock:
            self.state.publish(StateSnapshot(S.ERROR, detail or "process exited unexpectedly"))
        self._emit(f"Process exited unexpectedly: {detail}")

    def _begin(self) -> None:
        self.last_error = None
        self._reset_progress()

    def _run_bootstrap(self, gw_cfg: Optional[GatewayConfig]) -> None:
        self._begin()
        self._transition(S.PREPARING, "Preparing rootfs")
        layers = self.resolver(self._emit)
        self._provision(layers)
        self._start_services(gw_cfg)

    def _run_quick_start(self, gw_cfg: Optional[GatewayConfig]) -> None:
        self._begin()
        layers = self.resolver(self._emit)
        if self._stale(layers):
            self._transition(S.PREPARING, "Updating rootfs layers")
            self._provision(layers)
        else:
            self._emit("Rootfs up to date")
            self._post_install()
        self._start_services(gw_cfg)

    # ---------------------------
    # Provisionamento
    # ---------------------------
    def _stale(self, layers: List[LayerSpec]) -> List[LayerSpec]:
        stale = self.ledger.stale_layers(layers)
        if stale:
            return stale
        missing = self.provisioner.missing_markers()
        if missing:
            # ledger completo mas árvore sem os binários: não dá para confiar nele
            logger.info("rootfs sem %s, todas as camadas serão aplicadas", ", ".join(missing))
            return list(layers)
        return []

    def _provision(self, layers: List[LayerSpec]) -> None:
        stale = self._stale(layers)
        if not stale:
            self._emit("All layers up to date")
        tracker = ProgressTracker(stale, ceiling=PROVISION_CEILING)
        total = len(stale)

        for index, layer in enumerate(stale, start=1):
            headline = f"Layer {index}/{total}: {layer.label} ({self.ledger.describe_change(layer)}, {layer.display_size})"
            if self.current.state is S.PREPARING:
                self._check_cancelled()
                self._emit(headline)
            else:
                self._transition(S.PREPARING, headline)

            def on_phase(phase: str, layer=layer) -> None:
                if phase == PHASE_DOWNLOADING:
                    self._transition(S.DOWNLOADING, f"Downloading {layer.name} ({layer.display_size})")
                else:
                    self._transition(S.EXTRACTING, f"Extracting {layer.name}")

            def on_progress(fraction: float, layer=layer) -> None:
                self._check_cancelled()
                self._set_progress(tracker.partial(layer, fraction))

            self.provisioner.provision(layer, on_phase=on_phase, on_progress=on_progress)
            # só depois da extração completa
            self.ledger.commit(layer.name, layer.version)
            self._set_progress(tracker.complete(layer))
            self._emit(f"{layer.label} installed")

        self._post_install()
        self._set_progress(PROVISION_CEILING)

    def _post_install(self) -> None:
        write_compat_shim(self.rootfs_dir)
        self.provisioner.ensure_executable()
        self.provisioner.setup_lib_dir()
        self.sandbox.prepare()
        if not self.provisioner.is_ready():
            missing = self.provisioner.missing_markers() or [self.ledger.path]
            raise RootfsIncompleteError(f"rootfs incomplete, missing: {', '.join(missing)}")

    # ---------------------------
    # Processos
    # ---------------------------
    def _start_services(self, gw_cfg: Optional[GatewayConfig]) -> None:
        gw_cfg = gw_cfg or self._gw_cfg or GatewayConfig.from_config(
            port=self.cfg.get("gateway_port"),
            ui_port=self.cfg.get("ui_port"),
        )
        self._gw_cfg = gw_cfg

        self._transition(S.STARTING, f"Starting gateway on port {gw_cfg.port}")
        write_gateway_config(self.rootfs_dir, gw_cfg)
        self._set_progress(CONFIG_WRITTEN)

        if not self.sandbox.engine_available():
            raise ProcessStartupError(f"proot binary not found at {self.sandbox.proot}", role=GATEWAY)
        self.sandbox.prepare()

        self._check_cancelled()
        cmd = self.sandbox.command(GATEWAY_CMD.format(port=gw_cfg.port, token=gw_cfg.token))
        handle = self.supervisor.start(GATEWAY, cmd)
        self._await_ready(handle, gw_cfg.port, float(self._opt("gateway_ready_timeout")))
        self._set_progress(PRIMARY_READY)

        self._transition(S.WAITING_FOR_SECONDARY, "Starting chat UI")
        if not os.path.isfile(os.path.join(self.rootfs_dir, UI_SCRIPT_REL)):
            self._emit("serve-ui.cjs not found, skipping Chat UI server")
            self._ui_started = False
        else:
            self._check_cancelled()
            cmd = self.sandbox.command(UI_CMD, extra_env={"PORT": str(gw_cfg.ui_port)})
            ui = self.supervisor.start(UI, cmd)
            self._ui_started = True
            self._await_ready(ui, gw_cfg.ui_port, float(self._opt("ui_ready_timeout")))

        self._transition(S.RUNNING, "Running", progress=1.0)
        self._watch()

    def _await_ready(self, handle: ProcessHandle, port: int, timeout: float) -> None:
        try:
            how = self.poller.wait_until_ready(
                port, timeout,
                ready_hint=handle.ready,
                alive=handle.is_alive,
                role=handle.role,
            )
        except ProcessStartupError as e:
            e.role = handle.role
            e.detail = handle.failure_detail()
            raise
        self._emit(f"{handle.role} ready on port {port} ({how})")

    # ---------------------------
    # Monitor de crash
    # ---------------------------
    def _watch(self) -> None:
        self._monitor = threading.Thread(
            target=self._monitor_loop, args=(self._generation,),
            name="lilroot-monitor", daemon=True)
        self._monitor.start()

    def is_monitoring(self) -> bool:
        monitor = self._monitor
        return monitor is not None and monitor.is_alive()

    def _monitor_loop(self, generation: int) -> None:
        """
        Vigia os processos em Running. Saída inesperada publica Error e,
        depois de restart_delay, religa via quick start.
        """
        interval = float(self._opt("poll_interval"))
        while not self._cancel.wait(interval):
            if generation != self._generation or self.current.state is not S.RUNNING:
                return
            if self.processes_alive():
                continue
            # serializado com _launch: uma execução nova não pode ser derrubada aqui
            with self._launch_lock:
                if self._cancel.is_set() or generation != self._generation:
                    return
                self._mark_crashed()
            break
        else:
            return

        limit = int(self._opt("max_restarts"))
        if self._restarts >= limit:
            if limit:
                self._emit(f"Giving up after {limit} automatic restarts")
            return
        if self._cancel.wait(float(self._opt("restart_delay"))):
            return
        # o worker que criou este monitor precisa ter terminado
        self.wait()
        if self._launch(self._run_quick_start, self._gw_cfg, generation=generation):
            self._restarts += 1
            self._emit(f"Restarting (attempt {self._restarts}/{limit})")
