import logging
import math
import threading
from collections import deque

import pandas as pd

import config

BUFFER_FIELDS = ["t", "SP", "PV", "PV_clean", "u", "error", "P_term", "I_term", "D_term"]


class TelemetryBuffer:
    def __init__(self, capacity=config.DEFAULT_BUFFER_SIZE, timestep=config.DEFAULT_SAMPLING_TIME):
        """Initialize a fixed-capacity FIFO of tick samples"""
        if capacity <= 0:
            raise ValueError(f"Buffer capacity must be > 0, got {capacity}")
        self.capacity = int(capacity)
        self.timestep = timestep
        self._data = deque(maxlen=self.capacity)
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._data)

    def append(self, tick_payload):
        """Store the buffered fields of a TICK payload; the oldest entry is evicted when full"""
        entry = {name: tick_payload[name] for name in BUFFER_FIELDS}
        with self._lock:
            self._data.append(entry)

    def get_data(self):
        """All entries, oldest first"""
        with self._lock:
            return list(self._data)

    def get_window(self, window_seconds):
        """Most recent ceil(window/timestep) entries, or all of them if fewer exist"""
        max_points = math.ceil(window_seconds / self.timestep)
        with self._lock:
            if len(self._data) <= max_points:
                return list(self._data)
            return list(self._data)[-max_points:] if max_points > 0 else []

    def clear(self):
        with self._lock:
            self._data.clear()

    def to_dataframe(self, window_seconds=None):
        """Buffered entries as a DataFrame, optionally limited to a window"""
        rows = self.get_data() if window_seconds is None else self.get_window(window_seconds)
        return pd.DataFrame(rows, columns=BUFFER_FIELDS)

    def get_latest_values(self):
        """Most recent entry as a one-row DataFrame"""
        with self._lock:
            rows = [self._data[-1]] if self._data else []
        return pd.DataFrame(rows, columns=BUFFER_FIELDS)

    def get_statistics(self):
        """Basic statistics over the buffered data"""
        df = self.to_dataframe()
        if df.empty:
            logging.info("Telemetry buffer is empty, no statistics available")
            return {"total_records": 0}

        return {
            "total_records": len(df),
            "first_record": float(df["t"].iloc[0]),
            "last_record": float(df["t"].iloc[-1]),
            "avg_temperature": float(df["PV"].mean()),
            "min_temperature": float(df["PV"].min()),
            "max_temperature": float(df["PV"].max()),
            "avg_control_signal": float(df["u"].mean())
        }
