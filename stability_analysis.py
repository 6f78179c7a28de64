import math

import control
import numpy as np
import pandas as pd

from thermal_model import PlantModel


def fopdt_step_response(t, K, tau, T_amb, mode="heating", amplitude=1.0):
    """Closed-form response to a step of height amplitude at t=0 (L = 0)

    T(t) = T_amb + K_eff * U * (1 - exp(-t/tau))
    """
    if tau <= 0:
        raise ValueError(f"tau must be > 0, got {tau}")
    t = np.asarray(t, dtype=float)
    if np.any(t < 0) or not np.all(np.isfinite(t)):
        raise ValueError("t must be finite and >= 0")
    u = max(0.0, min(1.0, amplitude))
    gain = PlantModel.effective_gain(K, mode)
    return T_amb + gain * u * (1.0 - np.exp(-t / tau))


def rmse(a, b):
    """Root-mean-square error between two equally long series"""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        raise ValueError(f"RMSE: length mismatch {a.shape} vs {b.shape}")
    if a.size == 0:
        return 0.0
    return float(np.sqrt(np.mean((a - b) ** 2)))


class StabilityAnalyzer:
    def __init__(self, K=175.0, tau=360.0, L=25.0, mode="heating", pade_order=3):
        """Initialize stability analyzer with FOPDT plant parameters"""
        self.K = K            # Process gain
        self.tau = tau        # Time constant
        self.L = L            # Dead time
        self.mode = mode
        self.pade_order = pade_order

    @classmethod
    def from_plant(cls, plant: PlantModel, pade_order=3):
        p = plant.params
        return cls(K=p.K, tau=p.tau, L=p.L, mode=p.mode, pade_order=pade_order)

    def get_process_tf(self):
        """Process transfer function with Pade approximation for dead time

        Cooling plants use |K| (the loop is analysed as reverse acting).
        """
        H1 = control.tf([abs(self.K)], [self.tau, 1])
        if self.L <= 0:
            return H1

        num_pade, den_pade = control.pade(self.L, self.pade_order)
        H2 = control.tf(num_pade, den_pade)
        return control.series(H1, H2)

    @staticmethod
    def derivative_filter_time(N, Ts):
        """Continuous time constant equivalent to the discrete derivative filter"""
        alpha = N * Ts / (N * Ts + 1.0)
        return -Ts / math.log(alpha)

    def get_controller_tf(self, kp, ki, kd=0.0, N=10.0, Ts=0.1):
        """PID transfer function kp + ki/s + kd*s/(Tf*s + 1)"""
        C = control.tf([kp], [1])
        if ki > 0:
            C = C + control.tf([ki], [1, 0])
        if kd > 0:
            Tf = self.derivative_filter_time(N, Ts)
            C = C + control.tf([kd, 0], [Tf, 1])
        return C

    def get_loop_tf(self, kp, ki, kd=0.0, N=10.0, Ts=0.1):
        return control.series(self.get_controller_tf(kp, ki, kd, N, Ts), self.get_process_tf())

    def analyze_stability(self, kp, ki, kd=0.0, N=10.0, Ts=0.1):
        """Perform stability analysis and return key metrics

        The Pade approximant gives the loop several phase crossovers, so the
        margins are informational; stability comes from the closed-loop poles.
        """
        L = self.get_loop_tf(kp, ki, kd, N, Ts)

        gm, pm, wpc, wgc = control.margin(L)
        closed_loop_poles = control.poles(control.feedback(L, 1))

        return {
            'gain_margin': gm,
            'gain_margin_db': 20 * np.log10(gm) if gm > 0 else -np.inf,
            'phase_margin': pm,
            'critical_gain': kp * gm,
            'crossover_freq': wgc,
            'w180': wpc,
            'max_pole_real': float(np.max(np.real(closed_loop_poles))),
            'stable': bool(np.all(np.real(closed_loop_poles) < 0))
        }

    def frequency_response(self, kp, ki, kd=0.0, N=10.0, Ts=0.1, w=None):
        """Loop Bode data as a DataFrame (omega, magnitude_db, phase_deg)"""
        L = self.get_loop_tf(kp, ki, kd, N, Ts)
        if w is None:
            w = np.logspace(-4, 1, 500)

        mag, phase, omega = control.frequency_response(L, w)
        mag = np.squeeze(mag)
        phase = np.squeeze(phase)

        return pd.DataFrame({
            'omega': np.squeeze(omega),
            'magnitude_db': 20 * np.log10(mag),
            'phase_deg': np.degrees(phase)
        })
