import numpy as np
import pytest

from errors import ProtocolError
from protocol import (PAYLOAD_TYPES, CommandType, InitPayload, ResetPayload, SetPidPayload,
                      SetSpPayload, error_event, make_command, parse_command, ready_event)


def message(command_type, payload=None, **extra):
    msg = {"id": "cmd-1", "type": command_type, "timestamp": 12.5, "payload": payload}
    msg.update(extra)
    return msg


def test_every_command_has_a_payload_type():
    assert set(PAYLOAD_TYPES) == set(CommandType)


def test_parse_init_maps_wire_names():
    command = parse_command(message("INIT", {"timestep": 0.05, "bufferSize": 500,
                                             "debugMode": True}))
    assert command.type is CommandType.INIT
    assert command.id == "cmd-1"
    assert command.timestamp == 12.5
    assert command.payload == InitPayload(timestep=0.05, buffer_size=500, debug_mode=True)


def test_parse_applies_payload_defaults():
    assert parse_command(message("RESET")).payload == ResetPayload(preserve_params=False)
    assert parse_command(message("SET_SP", {"value": 80, "rampRate": 0.5})).payload == \
        SetSpPayload(value=80, ramp_rate=0.5)

    pid = parse_command(message("SET_PID", {"kp": 1.5, "ki": 0.2, "kd": 0.0})).payload
    assert pid == SetPidPayload(kp=1.5, ki=0.2, kd=0.0)
    assert pid.N is None and pid.Tt is None


def test_unknown_type_is_com_003():
    with pytest.raises(ProtocolError) as excinfo:
        parse_command(message("EXPLODE"))
    assert excinfo.value.code == "COM_003"


@pytest.mark.parametrize("raw", [
    None,
    "START",
    {"type": "START"},
    {"id": "x"},
    message("SET_PID", {"kp": 1.0, "ki": 0.1}),
    message("SET_PID", {"kp": "fast", "ki": 0.1, "kd": 0.0}),
    message("SET_NOISE", {"enabled": 1, "sigma": 0.1}),
    message("SET_SP", {"value": True}),
    message("SET_PLANT", {"K": 1.0, "tau": 10.0, "L": 0.0, "T_amb": 20.0, "mode": 3}),
    message("SET_PLANT", {"K": 1.0, "tau": 10.0, "L": 0.0, "T_amb": 20.0}),
    message("START", [1, 2]),
])
def test_malformed_messages_are_com_004(raw):
    with pytest.raises(ProtocolError) as excinfo:
        parse_command(raw)
    assert excinfo.value.code == "COM_004"


def test_command_to_dict_uses_wire_names():
    command = make_command(CommandType.RESET, preserve_params=True)
    wire = command.to_dict()
    assert wire["type"] == "RESET"
    assert wire["payload"] == {"preserveParams": True}
    assert parse_command(wire) == command


def test_ready_event_payload():
    event = ready_event(3.0)
    assert event.to_dict()["type"] == "READY"
    assert event.payload["limits"] == {"max_timestep": 1.0, "min_timestep": 0.01,
                                       "max_buffer_size": 100000}
    assert "FOPDT" in event.payload["capabilities"]


def test_error_event_payload():
    event = error_event("critical", "SIM_003", "boom", 4.0, details={"context": "plant"},
                        recoverable=False)
    assert event.payload == {
        "severity": "critical",
        "code": "SIM_003",
        "message": "boom",
        "recoverable": False,
        "timestamp": 4.0,
        "details": {"context": "plant"}
    }


def test_numpy_scalars_are_accepted():
    command = parse_command(message("SET_PLANT", {"K": np.float32(5.0), "tau": np.int64(30),
                                                  "L": np.float64(1.5), "T_amb": 20,
                                                  "mode": "heating"}))
    assert command.payload.K == 5.0
    assert command.payload.tau == 30
