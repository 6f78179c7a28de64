import logging
import math
import numbers
from collections import namedtuple

import numpy as np

import config
from errors import InvalidInput, InvalidParameters, NumericalInstability

PLANT_MODES = ("heating", "cooling")

PlantParameters = namedtuple("PlantParameters", ["K", "tau", "L", "T_amb", "mode"])

PIDParameters = namedtuple("PIDParameters", ["kp", "ki", "kd", "N", "Tt", "enabled"])

ControllerOutput = namedtuple(
    "ControllerOutput", ["u", "u_raw", "P_term", "I_term", "D_term", "saturated"])

DISABLED_OUTPUT = ControllerOutput(0.0, 0.0, 0.0, 0.0, 0.0, False)


def _is_finite(*values):
    return all(isinstance(v, numbers.Real) and math.isfinite(v) for v in values)


class PlantModel:
    """First-order-plus-dead-time thermal process with exact discretization.

    Continuous model: tau * dT/dt + T = K_eff * u(t - L) + T_amb.
    The state is the deviation x = T - T_amb, advanced with
    x[k+1] = phi * x[k] + gamma * u[k - d], phi = exp(-Ts/tau),
    gamma = K_eff * (1 - phi), which is stable for any Ts > 0.
    """

    def __init__(self, K=175.0, tau=360.0, L=25.0, T_amb=25.0, mode="heating",
                 Ts=config.DEFAULT_SAMPLING_TIME):
        """Initialize plant; tau <= 0 or Ts <= 0 is fatal"""
        self.params = PlantParameters(K, tau, L, T_amb, mode)
        self.Ts = Ts            # Sampling time

        # Discretization, filled by _update_discretization
        self.phi = 0.0
        self.gamma = 0.0
        self.dead_time_samples = 0

        # Initialize states
        self.x = 0.0                 # Deviation from ambient
        self.delay_buffer = np.zeros(0)  # Dead-time delay line
        self.buffer_index = 0

        self._check_hard_limits(self.params, self.Ts)
        self._update_discretization()

    @staticmethod
    def effective_gain(K, mode):
        """|K| signed by operating mode"""
        return -abs(K) if mode == "cooling" else abs(K)

    @staticmethod
    def _check_hard_limits(params, Ts):
        if not _is_finite(params.K, params.tau, params.L, params.T_amb):
            raise InvalidParameters(f"Plant parameters must be finite: {params._asdict()}")
        if params.tau <= 0:
            raise InvalidParameters(
                f"Time constant tau must be > 0, got {params.tau}",
                details={"parameter": "tau", "value": params.tau, "expected": "> 0"})
        if params.L < 0:
            raise InvalidParameters(
                f"Dead time L must be >= 0, got {params.L}",
                details={"parameter": "L", "value": params.L, "expected": ">= 0"})
        if params.mode not in PLANT_MODES:
            raise InvalidParameters(
                f"Unknown plant mode: {params.mode}",
                details={"parameter": "mode", "value": params.mode,
                         "expected": " | ".join(PLANT_MODES)})
        if not _is_finite(Ts) or Ts <= 0:
            raise InvalidParameters(
                f"Timestep must be > 0, got {Ts}",
                details={"parameter": "timestep", "value": Ts, "expected": "> 0"})

    def _update_discretization(self):
        """Recompute phi/gamma and resize the delay line"""
        self.phi = math.exp(-self.Ts / self.params.tau)
        self.gamma = self.effective_gain(self.params.K, self.params.mode) * (1.0 - self.phi)

        samples = int(round(self.params.L / self.Ts))
        if samples != len(self.delay_buffer):
            self._resize_delay_buffer(samples)
        self.dead_time_samples = samples

    def _resize_delay_buffer(self, samples):
        # Oldest entry sits at the write index; keep the newest ones that fit
        history = np.roll(self.delay_buffer, -self.buffer_index)
        keep = min(len(history), samples)
        resized = np.zeros(samples)
        if keep > 0:
            resized[samples - keep:] = history[len(history) - keep:]
        self.delay_buffer = resized
        self.buffer_index = 0

    def update_parameters(self, **changes):
        """Apply new parameters; returns advisory warnings for unusual values"""
        new_params = self.params._replace(**changes)
        self._check_hard_limits(new_params, self.Ts)
        self.params = new_params
        self._update_discretization()
        return self.validate_parameters(new_params)

    def update_timestep(self, Ts):
        """Change sampling time and rediscretize"""
        if Ts != self.Ts:
            self._check_hard_limits(self.params, Ts)
            self.Ts = Ts
            self._update_discretization()

    def step(self, u):
        """Advance one sample with control input u in [0, 1]; returns temperature"""
        if not _is_finite(u):
            raise InvalidInput(f"Invalid control input: {u}",
                               details={"parameter": "u", "value": u})

        # Input saturation
        u = max(0.0, min(1.0, float(u)))

        # Delay line: read the slot about to be overwritten
        u_delayed = u
        if self.dead_time_samples > 0:
            u_delayed = float(self.delay_buffer[self.buffer_index])
            self.delay_buffer[self.buffer_index] = u
            self.buffer_index = (self.buffer_index + 1) % self.dead_time_samples

        self.x = self.phi * self.x + self.gamma * u_delayed

        if not math.isfinite(self.x):
            raise NumericalInstability(f"Numerical instability in plant: x = {self.x}",
                                       details={"context": "plant"})

        return self.x + self.params.T_amb

    def current_temperature(self):
        """Temperature without advancing the simulation"""
        return self.x + self.params.T_amb

    def get_state(self):
        return {
            "x": self.x,
            "dead_time_buffer": self.delay_buffer.tolist(),
            "buffer_index": self.buffer_index
        }

    def get_parameters(self):
        return self.params._asdict()

    def discretization_info(self):
        return {
            "phi": self.phi,
            "gamma": self.gamma,
            "dead_time_samples": self.dead_time_samples,
            "timestep": self.Ts,
            "effective_gain": self.effective_gain(self.params.K, self.params.mode)
        }

    def reset(self):
        """Return to ambient temperature with an empty delay line"""
        self.x = 0.0
        self.delay_buffer[:] = 0.0
        self.buffer_index = 0

    @staticmethod
    def validate_parameters(params):
        """List physically questionable values; nothing here halts the plant"""
        warnings = []
        if params.tau <= 0:
            warnings.append(f"Time constant tau must be > 0 (got {params.tau})")
        if params.tau > config.MAX_TAU:
            warnings.append(f"Time constant tau very high: {params.tau}s "
                            f"(recommended max {config.MAX_TAU:.0f}s)")
        if params.L < 0:
            warnings.append(f"Dead time L must be >= 0 (got {params.L})")
        if params.L > config.MAX_DEAD_TIME_RATIO * params.tau:
            warnings.append(f"Dead time L very high relative to tau: "
                            f"L={params.L}s, tau={params.tau}s (recommended L < 10*tau)")
        if abs(params.K) == 0:
            warnings.append("Gain K cannot be 0")
        if abs(params.K) > config.MAX_ABS_GAIN:
            warnings.append(f"Gain K very high: {params.K} "
                            f"(recommended max +/-{config.MAX_ABS_GAIN:.0f})")
        if abs(params.T_amb) > config.MAX_ABS_AMBIENT:
            warnings.append(f"Ambient temperature T_amb out of range: {params.T_amb} degC")
        return warnings


class PIDController:
    """Positional PID with derivative on measurement and back-calculation anti-windup.

    Gains: kp [-], ki [1/s], kd [s]. The derivative term is low-pass
    filtered with alpha = N*Ts / (N*Ts + 1) and skipped on the first cycle.
    While the output saturates the integrator is pulled back by
    (u - u_raw) * Ts / Tt.
    """

    def __init__(self, kp=1.0, ki=0.1, kd=0.0, N=10.0, Tt=2.5, enabled=True,
                 Ts=config.DEFAULT_SAMPLING_TIME):
        """Initialize PID controller"""
        self.params = PIDParameters(kp, ki, kd, N, Tt, enabled)
        self.Ts = Ts                      # Sampling time
        self.out_min = config.OUTPUT_MIN  # Output limits
        self.out_max = config.OUTPUT_MAX
        for warning in self._check_parameters(self.params, self.Ts):
            logging.warning(f"PID: {warning}")

        # Initialize states
        self.integral = 0.0
        self.d_filtered = 0.0
        self.pv_prev = 0.0
        self.error_prev = 0.0
        self.first_cycle = True

    @staticmethod
    def _check_parameters(params, Ts):
        errors, warnings = PIDController.validate_parameters(params, Ts)
        if errors:
            raise InvalidParameters("; ".join(errors), details={"parameter": "pid"})
        return warnings

    def compute(self, SP, PV):
        """Run one control cycle; returns ControllerOutput"""
        if not _is_finite(SP, PV):
            raise InvalidInput(f"Invalid controller inputs: SP={SP}, PV={PV}",
                               details={"SP": SP, "PV": PV})

        if not self.params.enabled:
            return DISABLED_OUTPUT

        kp, ki, kd, N, Tt, _ = self.params
        error = SP - PV

        P_term = kp * error

        # Trapezoidal integration
        I_term = 0.0
        if ki > 0:
            self.integral += ki * (error + self.error_prev) * self.Ts / 2.0
            I_term = self.integral

        # Filtered derivative on PV, no kick on SP changes
        D_term = 0.0
        if kd > 0 and not self.first_cycle:
            pv_derivative = (PV - self.pv_prev) / self.Ts
            alpha = N * self.Ts / (N * self.Ts + 1.0)
            self.d_filtered = alpha * self.d_filtered + (1.0 - alpha) * kd * (-pv_derivative)
            D_term = self.d_filtered

        u_raw = P_term + I_term + D_term
        u = max(self.out_min, min(self.out_max, u_raw))
        saturated = u != u_raw

        # Back-calculation anti-windup
        if saturated and ki > 0:
            self.integral += (1.0 / Tt) * (u - u_raw) * self.Ts

        # Store previous values
        self.pv_prev = PV
        self.error_prev = error
        self.first_cycle = False

        if not (math.isfinite(self.integral) and math.isfinite(self.d_filtered)):
            raise NumericalInstability(
                f"Numerical instability in PID: I={self.integral}, D={self.d_filtered}",
                details={"context": "pid"})

        return ControllerOutput(u, u_raw, P_term, I_term, D_term, saturated)

    def update_parameters(self, **changes):
        """Merge new gains; rejected wholesale if any value is invalid"""
        new_params = self.params._replace(**changes)
        warnings = self._check_parameters(new_params, self.Ts)
        self.params = new_params
        return warnings

    def update_timestep(self, Ts):
        if Ts != self.Ts:
            self._check_parameters(self.params, Ts)
            self.Ts = Ts

    def set_output_limits(self, out_min, out_max):
        if out_min >= out_max:
            raise InvalidParameters(f"Invalid output limits: min={out_min} must be < max={out_max}")
        self.out_min = out_min
        self.out_max = out_max

    def reset(self):
        """Clear integrator and derivative filter, re-arm first cycle"""
        self.integral = 0.0
        self.d_filtered = 0.0
        self.pv_prev = 0.0
        self.error_prev = 0.0
        self.first_cycle = True

    def get_state(self):
        return {
            "integral": self.integral,
            "derivative_filtered": self.d_filtered,
            "pv_prev": self.pv_prev,
            "error_prev": self.error_prev,
            "first_cycle": self.first_cycle
        }

    def get_parameters(self):
        return self.params._asdict()

    @staticmethod
    def auto_tracking_time(kp, ki):
        """Heuristic anti-windup tracking time Tt = Ti/4 with Ti = kp/ki"""
        if ki <= 0:
            return 1.0
        return max(0.1, (kp / ki) / 4.0)

    @staticmethod
    def validate_parameters(params, Ts):
        """Return (errors, warnings) for a parameter set"""
        errors = []
        warnings = []

        values = (params.kp, params.ki, params.kd, params.N, params.Tt, Ts)
        if not _is_finite(*values):
            errors.append(f"PID parameters must be finite: {params._asdict()}, Ts={Ts}")
            return errors, warnings

        if params.kp < 0:
            errors.append(f"Kp must be >= 0 (got {params.kp})")
        if params.ki < 0:
            errors.append(f"Ki must be >= 0 (got {params.ki})")
        if params.kd < 0:
            errors.append(f"Kd must be >= 0 (got {params.kd})")
        if params.N <= 0:
            errors.append(f"Filter factor N must be > 0 (got {params.N})")
        if params.Tt <= 0:
            errors.append(f"Tracking time Tt must be > 0 (got {params.Tt})")
        if Ts <= 0:
            errors.append(f"Timestep must be > 0 (got {Ts})")
            return errors, warnings

        if params.kp > 100:
            warnings.append(f"Kp very high: {params.kp} (typical 0.1-10)")
        if params.ki > 10:
            warnings.append(f"Ki very high: {params.ki} 1/s (typical 0.01-1)")
        if params.kd > 100:
            warnings.append(f"Kd very high: {params.kd} s (typical 0-20)")
        if params.N * Ts > 1:
            warnings.append(f"Filter factor N too high for Ts={Ts}: N*Ts = {params.N * Ts:.3g} > 1")
        if params.kd > 0 and params.kd / Ts > 1000:
            warnings.append(f"Derivative very sensitive: Kd/Ts = {params.kd / Ts:.0f} (recommended < 1000)")

        return errors, warnings
