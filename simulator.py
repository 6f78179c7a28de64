import logging
import math
import time
from collections import deque
from typing import Any, Callable, Dict, Optional, Union

import config
from errors import (CRITICAL, WARNING, InvalidParameters, PerformanceWarning,
                    ProtocolError, SimulationError, ValidationError)
from metrics import MetricsEngine
from noise import NoiseSource
from protocol import (Command, CommandType, EngineState, Event, EventType, error_event,
                      parse_command, ready_event, state_event)
from thermal_model import PIDController, PlantModel

COMMAND_HANDLERS = {
    CommandType.INIT: "_handle_init",
    CommandType.START: "_handle_start",
    CommandType.PAUSE: "_handle_pause",
    CommandType.RESET: "_handle_reset",
    CommandType.SET_PID: "_handle_set_pid",
    CommandType.SET_PLANT: "_handle_set_plant",
    CommandType.SET_SP: "_handle_set_sp",
    CommandType.SET_NOISE: "_handle_set_noise",
}

_unhandled = set(CommandType) - set(COMMAND_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No handler registered for commands: {sorted(_unhandled)}")


class SimulationEngine:
    """Closed-loop plant/PID simulation driven one tick at a time.

    The engine owns its plant, controller, metrics engine and noise
    source, and reports everything through ``emit`` as protocol events.
    It never schedules itself: a host calls ``tick()`` every
    ``timestep`` seconds while the engine is running.
    """

    def __init__(self, emit: Optional[Callable[[Event], None]] = None,
                 clock: Callable[[], float] = time.perf_counter):
        """Initialize an engine waiting for INIT"""
        self._emit = emit or (lambda event: None)
        self.clock = clock
        self.state = EngineState.INITIALIZING

        # Session configuration
        self.timestep = config.DEFAULT_SAMPLING_TIME
        self.buffer_size = config.DEFAULT_BUFFER_SIZE
        self.debug_mode = False

        # Owned components, created on INIT
        self.plant: Optional[PlantModel] = None
        self.controller: Optional[PIDController] = None
        self.metrics: Optional[MetricsEngine] = None
        self.noise: Optional[NoiseSource] = None

        # Simulation variables
        self.t = 0.0
        self.setpoint = config.DEFAULT_SETPOINT
        self.sp_target = self.setpoint
        self.ramp_rate = None
        self.pv = config.DEFAULT_PLANT_PARAMS['T_amb']
        self.pv_clean = self.pv
        self.u = 0.0
        self.samples_processed = 0

        self._reset_performance()
        self._recent_pv = deque()

    # ------------------------------------------------------------------
    # Command boundary
    # ------------------------------------------------------------------

    def handle_command(self, message: Union[Command, Dict[str, Any]]):
        """Process one command; every failure is reported as an ERROR event"""
        try:
            command = parse_command(message)
        except ProtocolError as e:
            self._report(e)
            return

        if self.debug_mode:
            logging.info(f"Command received: {command.type.value} {command.payload}")

        if command.type is not CommandType.INIT and self.state in (EngineState.INITIALIZING,
                                                                   EngineState.ERROR):
            self._report(ProtocolError(
                f"Command {command.type.value} not accepted in state {self.state.value}; INIT required",
                code="COM_005", details={"state": self.state.value}))
            return

        handler = getattr(self, COMMAND_HANDLERS[command.type])
        try:
            handler(command.payload)
        except SimulationError as e:
            self._report(e)
        except Exception as e:
            logging.exception(f"Unexpected failure processing {command.type.value}")
            self._report(SimulationError(
                f"Error processing command {command.type.value}: {e}", code="COM_001"))

    def _handle_init(self, payload):
        timestep = payload.timestep
        buffer_size = payload.buffer_size

        if not (math.isfinite(timestep)
                and config.MIN_SAMPLING_TIME <= timestep <= config.MAX_SAMPLING_TIME):
            self._fail_init(f"Invalid timestep: {timestep} "
                            f"(range: {config.MIN_SAMPLING_TIME}-{config.MAX_SAMPLING_TIME}s)",
                            "timestep", timestep)
            return
        if not (float(buffer_size).is_integer() and 0 < buffer_size <= config.MAX_BUFFER_SIZE):
            self._fail_init(f"Invalid buffer size: {buffer_size} "
                            f"(max: {config.MAX_BUFFER_SIZE})", "bufferSize", buffer_size)
            return

        try:
            plant = PlantModel(**config.DEFAULT_PLANT_PARAMS, Ts=timestep)
            controller = PIDController(**config.DEFAULT_PID_PARAMS, Ts=timestep)
        except ValidationError as e:
            self._fail_init(f"Error initializing engine: {e.message}", "defaults", None)
            return

        self.timestep = timestep
        self.buffer_size = int(buffer_size)
        self.debug_mode = payload.debug_mode
        self.plant = plant
        self.controller = controller
        self.metrics = MetricsEngine(debug=self.debug_mode)
        self.noise = NoiseSource()

        self.t = 0.0
        self.setpoint = config.DEFAULT_SETPOINT
        self.sp_target = self.setpoint
        self.ramp_rate = None
        self.pv = plant.current_temperature()
        self.pv_clean = self.pv
        self.u = 0.0
        self.samples_processed = 0
        self._reset_performance()
        self._recent_pv = deque(maxlen=max(1, int(round(config.BOUNDS_WINDOW / timestep))))

        self.state = EngineState.READY
        self._emit(ready_event(self.clock()))

        if self.debug_mode:
            logging.info(f"Simulation engine initialized: timestep={timestep}s, "
                         f"bufferSize={self.buffer_size}")

    def _fail_init(self, message, parameter, value):
        self._report(ValidationError(message, code="INIT_001", severity=CRITICAL,
                                     details={"parameter": parameter, "value": value}))

    def _handle_start(self, payload):
        if self.state not in (EngineState.READY, EngineState.PAUSED):
            raise SimulationError(f"Cannot start simulation from state: {self.state.value}",
                                  code="SIM_002", details={"state": self.state.value})
        self.state = EngineState.RUNNING
        self._emit_state()
        if self.debug_mode:
            logging.info(f"Simulation started: {1 / self.timestep:.1f} Hz")

    def _handle_pause(self, payload):
        if self.state is not EngineState.RUNNING:
            logging.info(f"PAUSE ignored in state {self.state.value}")
            return
        self.state = EngineState.PAUSED
        self._emit_state()

    def _handle_reset(self, payload):
        self.plant.reset()
        self.controller.reset()
        self.metrics.reset()
        self.noise.reseed(self.noise.seed)

        self.t = 0.0
        self.pv = self.plant.params.T_amb
        self.pv_clean = self.pv
        self.u = 0.0
        self.samples_processed = 0
        if not payload.preserve_params:
            self.setpoint = self.plant.params.T_amb
            self.sp_target = self.setpoint
            self.ramp_rate = None

        self._reset_performance()
        self._recent_pv.clear()
        self.state = EngineState.READY

        self._emit_state()
        # No TICK here: a synthetic sample would end up in the host buffer
        self._emit(Event(EventType.METRICS, {
            "overshoot": 0.0,
            "t_peak": 0.0,
            "settling_time": 0.0,
            "is_calculating": False,
            "pv_max": self.pv,
            "pv_min": self.pv,
            "t_start": 0.0,
            "t_current": 0.0,
            "samples_count": 0
        }, timestamp=self.clock()))

    def _handle_set_pid(self, payload):
        changes = {"kp": payload.kp, "ki": payload.ki, "kd": payload.kd}
        for name in ("N", "Tt", "enabled"):
            value = getattr(payload, name)
            if value is not None:
                changes[name] = value
        self._report_warnings(self.controller.update_parameters(**changes), "pid")

    def _handle_set_plant(self, payload):
        warnings = self.plant.update_parameters(K=payload.K, tau=payload.tau, L=payload.L,
                                                T_amb=payload.T_amb, mode=payload.mode)
        self._report_warnings(warnings, "plant")

    def _handle_set_sp(self, payload):
        if not math.isfinite(payload.value):
            raise InvalidParameters(f"Invalid setpoint: {payload.value}",
                                    details={"parameter": "value", "value": payload.value})
        if payload.ramp_rate is not None and payload.ramp_rate > 0:
            self.sp_target = payload.value
            self.ramp_rate = payload.ramp_rate
        else:
            self.setpoint = payload.value
            self.sp_target = payload.value
            self.ramp_rate = None

    def _handle_set_noise(self, payload):
        if not math.isfinite(payload.sigma) or payload.sigma < 0:
            raise InvalidParameters(f"Noise sigma must be finite and >= 0, got {payload.sigma}",
                                    details={"parameter": "sigma", "value": payload.sigma})
        if payload.seed is not None and not math.isfinite(payload.seed):
            raise InvalidParameters(f"Noise seed must be finite, got {payload.seed}",
                                    details={"parameter": "seed", "value": payload.seed})
        self.noise.configure(payload.enabled, payload.sigma, payload.seed)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self):
        """Advance the simulation by one timestep; no-op unless running"""
        if self.state is not EngineState.RUNNING:
            return

        cycle_start = self.clock()
        try:
            self._advance()
        except SimulationError as e:
            self._report(e)
            return
        except Exception as e:
            logging.exception("Unexpected failure in simulation cycle")
            self._report(SimulationError(f"Error in simulation cycle: {e}", code="SIM_001"))
            return

        cycle_time = (self.clock() - cycle_start) * 1000.0
        self._record_cycle(cycle_time)

        if self.samples_processed % self._state_every == 0:
            self._emit_state()

    def _advance(self):
        self._apply_ramp()

        output = self.controller.compute(self.setpoint, self.pv)
        pv_clean = self.plant.step(output.u)
        pv = pv_clean + self.noise.sample()

        self.samples_processed += 1
        self.t = self.samples_processed * self.timestep
        self.pv = pv
        self.pv_clean = pv_clean
        self.u = output.u

        metrics = self.metrics.process_sample(self.t, self.setpoint, pv)
        if metrics.is_calculating or metrics.overshoot > 0:
            self._emit(Event(EventType.METRICS, metrics.as_payload(), timestamp=self.clock()))

        self._emit(Event(EventType.TICK, {
            "t": self.t,
            "SP": self.setpoint,
            "PV": pv,
            "PV_clean": pv_clean,
            "u": output.u,
            "u_raw": output.u_raw,
            "error": self.setpoint - pv,
            "P_term": output.P_term,
            "I_term": output.I_term,
            "D_term": output.D_term,
            "plant_state": self.plant.x,
            "saturated": output.saturated,
            "bounds": self._update_bounds(self.t, pv)
        }, timestamp=self.clock()))

    def _apply_ramp(self):
        if self.ramp_rate is None:
            return
        step = self.ramp_rate * self.timestep
        remaining = self.sp_target - self.setpoint
        if abs(remaining) <= step:
            self.setpoint = self.sp_target
            self.ramp_rate = None
        else:
            self.setpoint += math.copysign(step, remaining)

    def _update_bounds(self, t, pv):
        self._recent_pv.append((t, pv))
        values = [v for _, v in self._recent_pv]
        return {
            "t_min": self._recent_pv[0][0],
            "t_max": t,
            "PV_min": min(values),
            "PV_max": max(values)
        }

    # ------------------------------------------------------------------
    # Performance and reporting
    # ------------------------------------------------------------------

    @property
    def period_ms(self):
        return self.timestep * 1000.0

    @property
    def _state_every(self):
        return max(1, int(round(config.STATE_INTERVAL / self.timestep)))

    def _reset_performance(self):
        self.start_time = self.clock()
        self.cycle_times = deque(maxlen=config.CYCLE_TIME_HISTORY)
        self.max_cycle_time = 0.0

    def _record_cycle(self, cycle_time):
        self.cycle_times.append(cycle_time)
        self.max_cycle_time = max(self.max_cycle_time, cycle_time)

        if cycle_time > self.period_ms * config.CYCLE_OVERRUN_RATIO:
            overrun = PerformanceWarning(cycle_time, self.period_ms)
            logging.warning(overrun.message)
            self._emit(error_event(overrun.severity, overrun.code, overrun.message,
                                   self.clock(), details=overrun.details, recoverable=True))

    def performance(self):
        avg_cycle_time = sum(self.cycle_times) / len(self.cycle_times) if self.cycle_times else 0.0
        return {
            "avg_cycle_time": avg_cycle_time,
            "max_cycle_time": self.max_cycle_time,
            "cpu_usage_estimate": min(100.0, avg_cycle_time / self.period_ms * 100.0)
        }

    def _emit_state(self):
        perf = self.performance()
        self._emit(state_event(self.state, self.clock() - self.start_time, self.samples_processed,
                               perf["avg_cycle_time"], perf["max_cycle_time"],
                               perf["cpu_usage_estimate"], self.clock()))

    def _report_warnings(self, warnings, parameter):
        for warning in warnings:
            logging.warning(f"Parameter warning ({parameter}): {warning}")
            self._emit(error_event(WARNING, "CFG_002", warning, self.clock(),
                                   details={"parameter": parameter}, recoverable=True))

    def _report(self, error: SimulationError):
        """Convert a failure into an ERROR event; critical ones halt the engine"""
        if error.severity == WARNING:
            logging.warning(f"[{error.code}] {error.message}")
        else:
            logging.error(f"[{error.code}] {error.message}")

        self._emit(error_event(error.severity, error.code, error.message, self.clock(),
                               details=error.details, recoverable=error.recoverable))

        if error.severity == CRITICAL:
            self.state = EngineState.ERROR
            self._emit_state()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def is_running(self) -> bool:
        return self.state is EngineState.RUNNING

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "t": self.t,
            "SP": self.setpoint,
            "PV": self.pv,
            "PV_clean": self.pv_clean,
            "u": self.u,
            "samples_processed": self.samples_processed,
            "timestep": self.timestep,
            "buffer_size": self.buffer_size
        }
