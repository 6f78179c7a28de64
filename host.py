"""Host side of the engine boundary.

SimulationHost runs one SimulationEngine on a dedicated scheduler
thread. Commands are queued FIFO and executed one at a time on that
thread; while the engine is running the thread sleeps until the next
nominal deadline and calls ``tick()``. Deadlines advance by exactly one
period, so an overrun never shifts later ticks.
"""
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Optional, Union

import config
from errors import CRITICAL, ERROR
from protocol import (Command, CommandType, EngineState, Event, EventType, error_event,
                      make_command, parse_command)
from simulator import SimulationEngine
from telemetry_buffer import TelemetryBuffer

IDLE_POLL = 0.05  # seconds between queue polls while not running

_STOP = object()

CALLBACK_NAMES = ("on_ready", "on_tick", "on_state", "on_error", "on_metrics")


class SimulationHost:
    def __init__(self, timestep: float = config.DEFAULT_SAMPLING_TIME,
                 buffer_size: int = config.DEFAULT_BUFFER_SIZE,
                 debug_mode: bool = False,
                 ready_timeout: float = config.READY_TIMEOUT):
        """Initialize host; call initialize() to start the engine thread"""
        self.timestep = timestep
        self.buffer_size = buffer_size
        self.debug_mode = debug_mode
        self.ready_timeout = ready_timeout

        self.engine = SimulationEngine(emit=self._handle_event)
        self.buffer = TelemetryBuffer(buffer_size, timestep)
        self.callbacks: Dict[str, Callable[[Dict[str, Any]], None]] = {}

        self.status: Dict[str, Any] = {
            "connected": False,
            "engine_state": EngineState.INITIALIZING.value,
            "last_tick": None,
            "performance": None
        }
        self.latest_metrics: Optional[Dict[str, Any]] = None

        self._commands: "queue.Queue[Any]" = queue.Queue()
        self._pending = []
        self._pending_lock = threading.Lock()
        self._ready = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._ready_timer: Optional[threading.Timer] = None
        self._initialized = False

        self._event_handlers = {
            EventType.READY: self._on_ready_event,
            EventType.TICK: self._on_tick_event,
            EventType.STATE: self._on_state_event,
            EventType.ERROR: self._on_error_event,
            EventType.METRICS: self._on_metrics_event,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self):
        """Start the scheduler thread and send INIT"""
        if self._initialized:
            raise RuntimeError("SimulationHost is already initialized")
        self._initialized = True

        self._thread = threading.Thread(target=self._run, name="simulation-engine", daemon=True)
        self._thread.start()

        self._ready_timer = threading.Timer(self.ready_timeout, self._handle_ready_timeout)
        self._ready_timer.daemon = True
        self._ready_timer.start()

        self._commands.put(make_command(CommandType.INIT, timestep=self.timestep,
                                        buffer_size=self.buffer_size,
                                        debug_mode=self.debug_mode))
        if self.debug_mode:
            logging.info("SimulationHost initializing...")

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until READY arrives; False on timeout"""
        return self._ready.wait(timeout)

    def destroy(self):
        """Stop the scheduler thread and drop buffered data"""
        if self._ready_timer is not None:
            self._ready_timer.cancel()
            self._ready_timer = None

        if self._thread is not None:
            self._commands.put(_STOP)
            self._thread.join()
            self._thread = None

        self.status["connected"] = False
        self.status["engine_state"] = EngineState.ERROR.value
        self._initialized = False
        self._ready.clear()
        self.buffer.clear()
        with self._pending_lock:
            self._pending = []

        if self.debug_mode:
            logging.info("SimulationHost destroyed")

    def _handle_ready_timeout(self):
        if not self.status["connected"]:
            message = f"Timeout waiting for engine READY ({self.ready_timeout:g}s)"
            logging.error(message)
            self._dispatch_callback("on_error", error_event(
                CRITICAL, "CON_001", message, time.monotonic(), recoverable=False).payload)

    # ------------------------------------------------------------------
    # Scheduler thread
    # ------------------------------------------------------------------

    def _run(self):
        next_deadline = None
        while True:
            if self.engine.is_running():
                if next_deadline is None:
                    next_deadline = time.monotonic() + self.engine.timestep
                timeout = max(0.0, next_deadline - time.monotonic())
            else:
                next_deadline = None
                timeout = IDLE_POLL

            try:
                item = self._commands.get(timeout=timeout)
            except queue.Empty:
                item = None

            if item is _STOP:
                break
            if item is not None:
                self._execute(item)

            # Fire every deadline that has passed, each at its nominal time slot
            while (next_deadline is not None and self.engine.is_running()
                   and time.monotonic() >= next_deadline):
                self.engine.tick()
                next_deadline += self.engine.timestep

    def _execute(self, command: Command):
        if command.type is CommandType.RESET:
            self.buffer.clear()
        self.engine.handle_command(command)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def send_command(self, message: Union[Command, Dict[str, Any]]):
        """Validate and enqueue a command; held back until READY unless it is INIT

        Once INIT has failed nothing but another INIT is accepted: other
        commands are dropped and reported through on_error as COM_005.
        """
        if self._thread is None:
            raise RuntimeError("SimulationHost is not initialized")
        command = parse_command(message)

        if self.debug_mode:
            logging.info(f"Command sent: {command.type.value} {command.payload}")

        with self._pending_lock:
            if self._ready.is_set() or command.type is CommandType.INIT:
                self._commands.put(command)
                return
            if self.status["engine_state"] != EngineState.ERROR.value:
                self._pending.append(command)
                return

        # READY cannot arrive until a new INIT succeeds
        reason = f"Command {command.type.value} dropped: engine is not initialized"
        logging.warning(reason)
        self._dispatch_callback("on_error", error_event(
            ERROR, "COM_005", reason, time.monotonic(),
            details={"state": EngineState.ERROR.value}).payload)

    def _release_pending(self):
        # READY and the flush happen under one lock so queued order is kept
        with self._pending_lock:
            self._ready.set()
            for command in self._pending:
                self._commands.put(command)
            self._pending = []

    def start(self):
        self.send_command(make_command(CommandType.START))

    def pause(self):
        self.send_command(make_command(CommandType.PAUSE))

    def reset(self, preserve_params: bool = False):
        self.send_command(make_command(CommandType.RESET, preserve_params=preserve_params))

    def set_pid(self, kp: float, ki: float, kd: float, N: Optional[float] = None,
                Tt: Optional[float] = None, enabled: Optional[bool] = None):
        self.send_command(make_command(CommandType.SET_PID, kp=kp, ki=ki, kd=kd,
                                       N=N, Tt=Tt, enabled=enabled))

    def set_plant(self, K: float, tau: float, L: float, T_amb: float, mode: str = "heating"):
        self.send_command(make_command(CommandType.SET_PLANT, K=K, tau=tau, L=L,
                                       T_amb=T_amb, mode=mode))

    def set_setpoint(self, value: float, ramp_rate: Optional[float] = None):
        self.send_command(make_command(CommandType.SET_SP, value=value, ramp_rate=ramp_rate))

    def set_noise(self, enabled: bool, sigma: float = 0.0, seed: Optional[int] = None):
        self.send_command(make_command(CommandType.SET_NOISE, enabled=enabled,
                                       sigma=sigma, seed=seed))

    # ------------------------------------------------------------------
    # Events (run on the scheduler thread)
    # ------------------------------------------------------------------

    def set_callbacks(self, **callbacks: Callable[[Dict[str, Any]], None]):
        unknown = set(callbacks) - set(CALLBACK_NAMES)
        if unknown:
            raise ValueError(f"Unknown callbacks: {sorted(unknown)}")
        self.callbacks.update(callbacks)

    def _handle_event(self, event: Event):
        if self.debug_mode:
            logging.debug(f"Event received: {event.type.value}")
        self._event_handlers[event.type](event)

    def _on_ready_event(self, event: Event):
        self.status["connected"] = True
        self.status["engine_state"] = EngineState.READY.value
        if self._ready_timer is not None:
            self._ready_timer.cancel()
        self._release_pending()
        self._dispatch_callback("on_ready", event.payload)

    def _on_tick_event(self, event: Event):
        # t == 0 would be a synthetic reset sample
        if event.payload["t"] > 0:
            self.buffer.append(event.payload)
        self.status["last_tick"] = event.timestamp
        self._dispatch_callback("on_tick", event.payload)

    def _on_state_event(self, event: Event):
        payload = event.payload
        self.status["engine_state"] = payload["state"]
        self.status["performance"] = dict(payload["performance"],
                                          uptime=payload["uptime"],
                                          samples_processed=payload["samples_processed"])
        self._dispatch_callback("on_state", payload)

    def _on_error_event(self, event: Event):
        if event.payload["severity"] == CRITICAL:
            with self._pending_lock:
                self.status["engine_state"] = EngineState.ERROR.value
                if not self._ready.is_set() and self._pending:
                    logging.warning(f"Dropping {len(self._pending)} commands held for READY")
                    self._pending = []
        self._dispatch_callback("on_error", event.payload)

    def _on_metrics_event(self, event: Event):
        self.latest_metrics = event.payload
        self._dispatch_callback("on_metrics", event.payload)

    def _dispatch_callback(self, name: str, payload: Dict[str, Any]):
        callback = self.callbacks.get(name)
        if callback is None:
            return
        try:
            callback(payload)
        except Exception:
            logging.exception(f"Host callback {name} failed")

    # ------------------------------------------------------------------
    # Buffer and status
    # ------------------------------------------------------------------

    def get_buffer_data(self):
        return self.buffer.get_data()

    def get_window_data(self, window_seconds: float):
        return self.buffer.get_window(window_seconds)

    def get_status(self) -> Dict[str, Any]:
        return dict(self.status)

    def is_connected(self) -> bool:
        return self.status["connected"] and self._initialized

    def is_running(self) -> bool:
        return self.status["engine_state"] == EngineState.RUNNING.value


def main():
    """Run a short headless session and log the step-response metrics"""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    host = SimulationHost(timestep=0.01, buffer_size=5000)
    host.set_callbacks(on_error=lambda p: logging.warning(f"{p['code']}: {p['message']}"))
    host.initialize()
    if not host.wait_until_ready(config.READY_TIMEOUT):
        logging.error("Engine did not become ready")
        host.destroy()
        return

    host.set_plant(K=75.0, tau=45.0, L=3.0, T_amb=25.0, mode="heating")
    host.set_pid(kp=2.0, ki=0.2, kd=5.0, N=10.0, Tt=2.5)
    host.set_setpoint(60.0)
    host.start()
    time.sleep(10)
    host.pause()
    time.sleep(0.1)

    logging.info(f"Status: {host.get_status()}")
    logging.info(f"Telemetry: {host.buffer.get_statistics()}")
    logging.info(f"Metrics: {host.latest_metrics}")
    host.destroy()


if __name__ == "__main__":
    main()
