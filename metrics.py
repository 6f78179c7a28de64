"""Automatic step-response metrics.

A calculation starts whenever the setpoint moves by more than
``sp_change_threshold`` percent. While active, each sample updates the
overshoot (or undershoot for a descending step) and its peak time, and
tracks entry into the settling band. Settling is confirmed after the
signal stays inside the band for ``settling_window`` seconds; the
reported settling time is the moment it first entered. The calculation
finishes once settling has been confirmed for 1.5 windows, or after
``max_calculation_time`` seconds.
"""
import logging
import math
from typing import Any, Dict, Optional

import config

SP_EPSILON = 1e-9


class MetricsState:
    def __init__(self):
        self.overshoot = 0.0
        self.t_peak = 0.0
        self.settling_time = 0.0
        self.is_calculating = False
        self.sp_previous = 0.0
        self.direction = 1
        self.pv_max = -math.inf
        self.pv_min = math.inf
        self.t_start = 0.0
        self.t_current = 0.0
        self.samples_count = 0
        self.settling_first_entry: Optional[float] = None
        self.settling_confirmed = False

    def as_payload(self) -> Dict[str, Any]:
        """Fields published in METRICS events"""
        return {
            "overshoot": self.overshoot,
            "t_peak": self.t_peak,
            "settling_time": self.settling_time,
            "is_calculating": self.is_calculating,
            "pv_max": self.pv_max,
            "pv_min": self.pv_min,
            "t_start": self.t_start,
            "t_current": self.t_current,
            "samples_count": self.samples_count
        }


class MetricsEngine:
    def __init__(self, debug: bool = False, **settings):
        """Initialize with METRICS_SETTINGS overridden by keyword settings"""
        self.settings = dict(config.METRICS_SETTINGS)
        self.update_config(**settings)
        self.debug = debug
        self.state = MetricsState()

    def update_config(self, **settings):
        unknown = set(settings) - set(config.METRICS_SETTINGS)
        if unknown:
            raise KeyError(f"Unknown metrics settings: {sorted(unknown)}")
        self.settings.update(settings)

    def reset(self):
        self.state = MetricsState()

    def process_sample(self, t: float, sp: float, pv: float) -> MetricsState:
        """Feed one (t, SP, PV) sample and return the updated state"""
        if not all(math.isfinite(v) for v in (t, sp, pv)):
            logging.warning(f"Metrics: invalid sample ignored (t={t}, SP={sp}, PV={pv})")
            return self.state

        state = self.state
        state.t_current = t
        state.samples_count += 1

        sp_change = abs(sp - state.sp_previous) / max(abs(state.sp_previous), SP_EPSILON) * 100
        if sp_change > self.settings['sp_change_threshold']:
            self._start_calculation(t, sp, pv)
            return state

        if not state.is_calculating:
            return state

        if t - state.t_start > self.settings['max_calculation_time']:
            if self.debug:
                logging.info(f"Metrics: calculation timed out at t={t:.1f}s")
            self._finish_calculation()
            return state

        state.pv_max = max(state.pv_max, pv)
        state.pv_min = min(state.pv_min, pv)

        self._update_overshoot(sp, pv, t)
        self._update_settling(sp, pv, t)

        if self._should_finish(sp, t):
            self._finish_calculation()

        state.sp_previous = sp
        return state

    def _start_calculation(self, t, sp, pv):
        state = self.state
        # Step direction is fixed here for the whole calculation
        state.direction = 1 if sp >= state.sp_previous else -1
        state.is_calculating = True
        state.t_start = t
        state.sp_previous = sp
        state.pv_max = pv
        state.pv_min = pv
        state.overshoot = 0.0
        state.t_peak = 0.0
        state.settling_time = 0.0
        state.settling_first_entry = None
        state.settling_confirmed = False
        state.samples_count = 0

        if self.debug:
            logging.info(f"Metrics: starting calculation - SP: {sp}, t: {t}s")

    def _update_overshoot(self, sp, pv, t):
        state = self.state
        if sp == 0:
            # No percentage around zero: track the absolute excursion
            excursion = max(0.0, pv * state.direction)
        else:
            excursion = max(0.0, (pv - sp) * state.direction / abs(sp) * 100)

        if excursion > state.overshoot:
            state.overshoot = excursion
            state.t_peak = t

    def _update_settling(self, sp, pv, t):
        if sp == 0:
            return

        state = self.state
        error_percent = abs(pv - sp) / abs(sp) * 100

        if error_percent <= self.settings['settling_threshold']:
            if state.settling_first_entry is None:
                state.settling_first_entry = t
                if self.debug:
                    logging.info(f"Settling: first entry into band at t={t:.1f}s "
                                 f"(error={error_percent:.2f}%)")

            time_in_band = t - state.settling_first_entry
            if not state.settling_confirmed and time_in_band >= self.settings['settling_window']:
                state.settling_time = state.settling_first_entry
                state.settling_confirmed = True
                if self.debug:
                    logging.info(f"Settling: confirmed at t={t:.1f}s "
                                 f"(time in band: {time_in_band:.1f}s)")

        elif not state.settling_confirmed and state.settling_first_entry is not None:
            # False start: left the band before confirmation
            if self.debug:
                logging.info(f"Settling: left band before confirmation at t={t:.1f}s")
            state.settling_first_entry = None

    def _should_finish(self, sp, t):
        state = self.state
        window = self.settings['settling_window']
        if sp == 0:
            reference = state.t_peak if state.t_peak > 0 else state.t_start
            return t - reference > window
        return state.settling_confirmed and t - state.settling_time >= 1.5 * window

    def _finish_calculation(self):
        state = self.state
        state.is_calculating = False
        if self.debug:
            settling = f"{state.settling_time:.1f}s" if state.settling_confirmed else "N/A"
            logging.info(f"Metrics: calculation complete - overshoot: {state.overshoot:.2f}%, "
                         f"t_peak: {state.t_peak:.1f}s, settling: {settling}, "
                         f"samples: {state.samples_count}")

    def get_metrics(self) -> Dict[str, Any]:
        payload = self.state.as_payload()
        payload["settling_confirmed"] = self.state.settling_confirmed
        return payload

    def validate_metrics(self) -> bool:
        """Sanity check of the current values"""
        state = self.state
        if not 0 <= state.overshoot <= 1000:
            logging.warning(f"Metrics: overshoot out of range: {state.overshoot}")
            return False
        for name in ("t_peak", "settling_time"):
            value = getattr(state, name)
            if value < 0 or value > state.t_current:
                logging.warning(f"Metrics: {name} out of range: {value}")
                return False
        return True
