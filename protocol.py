"""Command/event envelopes exchanged between the engine and its host.

Every message is ``{id, type, timestamp, payload}``. Commands flow
host -> engine, events flow engine -> host. Payloads are typed with one
dataclass per command; wire names (camelCase) are mapped on parse.
"""
from __future__ import annotations

import math
import numbers
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Union

import config
from errors import ProtocolError


class CommandType(str, Enum):
    INIT = "INIT"
    START = "START"
    PAUSE = "PAUSE"
    RESET = "RESET"
    SET_PID = "SET_PID"
    SET_PLANT = "SET_PLANT"
    SET_SP = "SET_SP"
    SET_NOISE = "SET_NOISE"


class EventType(str, Enum):
    READY = "READY"
    STATE = "STATE"
    TICK = "TICK"
    METRICS = "METRICS"
    ERROR = "ERROR"


class EngineState(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Command payloads
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InitPayload:
    timestep: float = config.DEFAULT_SAMPLING_TIME
    buffer_size: int = config.DEFAULT_BUFFER_SIZE
    debug_mode: bool = False


@dataclass(frozen=True)
class StartPayload:
    pass


@dataclass(frozen=True)
class PausePayload:
    pass


@dataclass(frozen=True)
class ResetPayload:
    preserve_params: bool = False


@dataclass(frozen=True)
class SetPidPayload:
    kp: float
    ki: float
    kd: float
    N: Optional[float] = None
    Tt: Optional[float] = None
    enabled: Optional[bool] = None


@dataclass(frozen=True)
class SetPlantPayload:
    K: float
    tau: float
    L: float
    T_amb: float
    mode: str


@dataclass(frozen=True)
class SetSpPayload:
    value: float
    ramp_rate: Optional[float] = None


@dataclass(frozen=True)
class SetNoisePayload:
    enabled: bool
    sigma: float
    seed: Optional[int] = None


CommandPayload = Union[InitPayload, StartPayload, PausePayload, ResetPayload,
                       SetPidPayload, SetPlantPayload, SetSpPayload, SetNoisePayload]

PAYLOAD_TYPES = {
    CommandType.INIT: InitPayload,
    CommandType.START: StartPayload,
    CommandType.PAUSE: PausePayload,
    CommandType.RESET: ResetPayload,
    CommandType.SET_PID: SetPidPayload,
    CommandType.SET_PLANT: SetPlantPayload,
    CommandType.SET_SP: SetSpPayload,
    CommandType.SET_NOISE: SetNoisePayload,
}

# python attribute -> wire key, where they differ
WIRE_NAMES = {
    "buffer_size": "bufferSize",
    "debug_mode": "debugMode",
    "preserve_params": "preserveParams",
    "ramp_rate": "rampRate",
}

BOOL_FIELDS = {"debug_mode", "preserve_params", "enabled"}
STRING_FIELDS = {"mode"}


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Command:
    type: CommandType
    payload: CommandPayload
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=time.monotonic)

    def to_dict(self) -> Dict[str, Any]:
        payload = {WIRE_NAMES.get(k, k): v for k, v in asdict(self.payload).items()
                   if v is not None}
        return {"id": self.id, "type": self.type.value,
                "timestamp": self.timestamp, "payload": payload}


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: Dict[str, Any]
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=time.monotonic)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": self.type.value,
                "timestamp": self.timestamp, "payload": dict(self.payload)}


def make_command(command_type: CommandType, **payload) -> Command:
    """Build a command from python-side payload names"""
    return Command(CommandType(command_type), PAYLOAD_TYPES[CommandType(command_type)](**payload))


def _coerce(name: str, value: Any, command_type: str) -> Any:
    if value is None:
        return None
    if name in BOOL_FIELDS:
        if not isinstance(value, bool):
            raise ProtocolError(f"{command_type}.{name} must be a boolean, got {value!r}",
                                code="COM_004", details={"parameter": name, "value": value})
        return value
    if name in STRING_FIELDS:
        if not isinstance(value, str):
            raise ProtocolError(f"{command_type}.{name} must be a string, got {value!r}",
                                code="COM_004", details={"parameter": name, "value": value})
        return value
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ProtocolError(f"{command_type}.{name} must be a number, got {value!r}",
                            code="COM_004", details={"parameter": name, "value": value})
    return value


def parse_payload(command_type: CommandType, raw: Optional[Dict[str, Any]]) -> CommandPayload:
    payload_type = PAYLOAD_TYPES[command_type]
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ProtocolError(f"{command_type.value} payload must be an object",
                            code="COM_004", details={"value": raw})

    kwargs = {}
    for f in fields(payload_type):
        key = WIRE_NAMES.get(f.name, f.name)
        if key in raw:
            kwargs[f.name] = _coerce(f.name, raw[key], command_type.value)
    try:
        return payload_type(**kwargs)
    except TypeError as e:
        raise ProtocolError(f"{command_type.value} payload incomplete: {e}",
                            code="COM_004", details={"payload": raw}) from e


def parse_command(message: Union[Command, Dict[str, Any]]) -> Command:
    """Validate a raw message into a Command; raises ProtocolError"""
    if isinstance(message, Command):
        return message
    if not isinstance(message, dict) or not message.get("id") or not message.get("type"):
        raise ProtocolError("Malformed message received", code="COM_004",
                            details={"message": repr(message)})

    try:
        command_type = CommandType(message["type"])
    except ValueError:
        raise ProtocolError(f"Unrecognized command type: {message['type']}",
                            code="COM_003", details={"type": message["type"]}) from None

    timestamp = message.get("timestamp", time.monotonic())
    if not isinstance(timestamp, (int, float)) or not math.isfinite(timestamp):
        timestamp = time.monotonic()

    payload = parse_payload(command_type, message.get("payload"))
    return Command(command_type, payload, id=str(message["id"]), timestamp=timestamp)


# ---------------------------------------------------------------------------
# Event builders
# ---------------------------------------------------------------------------

def ready_event(timestamp: float) -> Event:
    return Event(EventType.READY, {
        "version": config.ENGINE_VERSION,
        "capabilities": list(config.ENGINE_CAPABILITIES),
        "limits": {
            "max_timestep": config.MAX_SAMPLING_TIME,
            "min_timestep": config.MIN_SAMPLING_TIME,
            "max_buffer_size": config.MAX_BUFFER_SIZE
        }
    }, timestamp=timestamp)


def state_event(state: EngineState, uptime: float, samples_processed: int,
                avg_cycle_time: float, max_cycle_time: float,
                cpu_usage_estimate: float, timestamp: float) -> Event:
    return Event(EventType.STATE, {
        "state": state.value,
        "uptime": uptime,
        "samples_processed": samples_processed,
        "performance": {
            "avg_cycle_time": avg_cycle_time,
            "max_cycle_time": max_cycle_time,
            "cpu_usage_estimate": cpu_usage_estimate
        }
    }, timestamp=timestamp)


def error_event(severity: str, code: str, message: str, timestamp: float,
                details: Optional[Dict[str, Any]] = None,
                recoverable: bool = True) -> Event:
    payload = {
        "severity": severity,
        "code": code,
        "message": message,
        "recoverable": recoverable,
        "timestamp": timestamp
    }
    if details:
        payload["details"] = details
    return Event(EventType.ERROR, payload, timestamp=timestamp)
