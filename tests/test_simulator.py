import pytest

from protocol import CommandType, EngineState, EventType, make_command
from simulator import SimulationEngine


class FakeClock:
    """Monotonic clock that advances by a fixed amount on every read"""

    def __init__(self, step=0.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


@pytest.fixture
def events():
    return []


@pytest.fixture
def engine(events):
    return SimulationEngine(emit=events.append, clock=FakeClock())


def send(engine, command_type, **payload):
    engine.handle_command(make_command(command_type, **payload))


def of_type(events, event_type):
    return [e for e in events if e.type is event_type]


def errors(events):
    return [e.payload for e in of_type(events, EventType.ERROR)]


def ready_engine(engine, timestep=0.1, buffer_size=100):
    send(engine, CommandType.INIT, timestep=timestep, buffer_size=buffer_size)
    assert engine.state is EngineState.READY
    return engine


def test_init_emits_ready(engine, events):
    ready_engine(engine, timestep=0.05, buffer_size=500)
    ready = of_type(events, EventType.READY)
    assert len(ready) == 1
    assert ready[0].payload["version"] == "1.0.0"
    assert engine.timestep == 0.05
    assert engine.buffer_size == 500
    assert engine.plant.Ts == 0.05


@pytest.mark.parametrize("payload", [
    {"timestep": 2.0},
    {"timestep": 0.001},
    {"buffer_size": 200000},
    {"buffer_size": 0},
])
def test_invalid_init_is_critical(engine, events, payload):
    send(engine, CommandType.INIT, **payload)
    assert engine.state is EngineState.ERROR
    error = errors(events)[0]
    assert error["code"] == "INIT_001"
    assert error["severity"] == "critical"
    assert error["recoverable"] is False
    assert not of_type(events, EventType.READY)

    # A valid INIT recovers the engine
    ready_engine(engine)


def test_commands_before_init_rejected(engine, events):
    send(engine, CommandType.START)
    assert engine.state is EngineState.INITIALIZING
    assert errors(events)[0]["code"] == "COM_005"


def test_start_pause_reset_scenario(engine, events):
    ready_engine(engine)
    send(engine, CommandType.SET_SP, value=60.0)
    send(engine, CommandType.START)
    assert engine.state is EngineState.RUNNING
    assert of_type(events, EventType.STATE)[-1].payload["state"] == "running"

    for _ in range(50):
        engine.tick()

    ticks = of_type(events, EventType.TICK)
    assert engine.samples_processed == 50
    assert len(ticks) == 50
    assert ticks[-1].payload["t"] == pytest.approx(5.0)
    assert engine.state is EngineState.RUNNING

    send(engine, CommandType.PAUSE)
    assert engine.state is EngineState.PAUSED
    engine.tick()
    assert engine.samples_processed == 50
    assert len(of_type(events, EventType.TICK)) == 50

    events.clear()
    send(engine, CommandType.RESET, preserve_params=True)
    assert engine.state is EngineState.READY
    assert engine.t == 0.0
    assert engine.setpoint == 60.0
    assert engine.pv == engine.plant.params.T_amb
    assert not of_type(events, EventType.TICK)
    metrics = of_type(events, EventType.METRICS)
    assert metrics[-1].payload["overshoot"] == 0.0
    assert metrics[-1].payload["is_calculating"] is False


def test_reset_without_preserve_restores_ambient_setpoint(engine):
    ready_engine(engine)
    send(engine, CommandType.SET_SP, value=90.0)
    send(engine, CommandType.RESET)
    assert engine.setpoint == engine.plant.params.T_amb


def test_tick_payload(engine, events):
    ready_engine(engine)
    send(engine, CommandType.SET_SP, value=80.0)
    send(engine, CommandType.START)
    for _ in range(3):
        engine.tick()

    tick = of_type(events, EventType.TICK)[-1].payload
    for key in ("t", "SP", "PV", "PV_clean", "u", "u_raw", "error", "P_term", "I_term",
                "D_term", "plant_state", "saturated", "bounds"):
        assert key in tick
    assert tick["error"] == pytest.approx(tick["SP"] - tick["PV"])
    assert 0.0 <= tick["u"] <= 1.0
    assert tick["bounds"]["t_max"] == tick["t"]
    assert tick["bounds"]["t_min"] == pytest.approx(0.1)
    assert of_type(events, EventType.METRICS)[-1].payload["is_calculating"] is True


def test_start_while_running_is_rejected(engine, events):
    ready_engine(engine)
    send(engine, CommandType.START)
    send(engine, CommandType.START)
    assert engine.state is EngineState.RUNNING
    error = errors(events)[-1]
    assert error["code"] == "SIM_002"
    assert error["severity"] == "error"


def test_invalid_plant_parameters_are_recoverable(engine, events):
    ready_engine(engine)
    send(engine, CommandType.SET_PLANT, K=10.0, tau=0.0, L=1.0, T_amb=20.0, mode="heating")
    error = errors(events)[-1]
    assert error["code"] == "CFG_001"
    assert error["recoverable"] is True
    assert engine.state is EngineState.READY
    assert engine.plant.params.tau == 360.0


def test_plant_warnings_are_reported(engine, events):
    ready_engine(engine)
    send(engine, CommandType.SET_PLANT, K=10.0, tau=5000.0, L=1.0, T_amb=20.0, mode="cooling")
    warning = errors(events)[-1]
    assert warning["code"] == "CFG_002"
    assert warning["severity"] == "warning"
    assert engine.plant.params.tau == 5000.0
    assert engine.plant.params.mode == "cooling"


def test_partial_pid_update_keeps_unspecified_fields(engine, events):
    ready_engine(engine)
    send(engine, CommandType.SET_PID, kp=2.0, ki=0.5, kd=1.0)
    params = engine.controller.params
    assert (params.kp, params.ki, params.kd) == (2.0, 0.5, 1.0)
    assert params.N == 10.0 and params.Tt == 2.5

    send(engine, CommandType.SET_PID, kp=-1.0, ki=0.5, kd=1.0)
    assert errors(events)[-1]["code"] == "CFG_001"
    assert engine.controller.params.kp == 2.0


def test_set_plant_without_mode_is_rejected(engine, events):
    ready_engine(engine)
    send(engine, CommandType.SET_PLANT, K=10.0, tau=50.0, L=1.0, T_amb=20.0, mode="cooling")
    engine.handle_command({"id": "2", "type": "SET_PLANT", "timestamp": 0.0,
                           "payload": {"K": 12.0, "tau": 60.0, "L": 1.0, "T_amb": 20.0}})
    assert errors(events)[-1]["code"] == "COM_004"
    assert engine.plant.params.mode == "cooling"
    assert engine.plant.params.K == 10.0


@pytest.mark.parametrize("seed", [float("nan"), float("inf")])
def test_non_finite_noise_seed_leaves_settings_untouched(engine, events, seed):
    ready_engine(engine)
    before = engine.noise.get_settings()
    send(engine, CommandType.SET_NOISE, enabled=True, sigma=3.0, seed=seed)

    error = errors(events)[-1]
    assert error["code"] == "CFG_001"
    assert error["recoverable"] is True
    assert engine.noise.get_settings() == before


def test_protocol_errors_do_not_halt(engine, events):
    ready_engine(engine)
    engine.handle_command({"id": "1", "type": "LAUNCH", "timestamp": 0.0, "payload": {}})
    engine.handle_command({"type": "START"})
    assert [e["code"] for e in errors(events)] == ["COM_003", "COM_004"]
    assert engine.state is EngineState.READY


def test_noise_is_reproducible_with_seed():
    def run():
        captured = []
        engine = SimulationEngine(emit=captured.append, clock=FakeClock())
        ready_engine(engine)
        send(engine, CommandType.SET_NOISE, enabled=True, sigma=0.5, seed=1234)
        send(engine, CommandType.START)
        for _ in range(20):
            engine.tick()
        return [e.payload for e in of_type(captured, EventType.TICK)]

    first, second = run(), run()
    assert [p["PV"] for p in first] == [p["PV"] for p in second]
    assert any(p["PV"] != p["PV_clean"] for p in first)


def test_setpoint_ramp(engine):
    ready_engine(engine)
    send(engine, CommandType.SET_SP, value=35.0, ramp_rate=1.0)
    send(engine, CommandType.START)
    engine.tick()
    assert engine.setpoint == pytest.approx(25.1)
    for _ in range(104):
        engine.tick()
    assert engine.setpoint == 35.0


def test_numerical_instability_halts_engine(engine, events):
    ready_engine(engine)
    send(engine, CommandType.START)
    engine.plant.x = float("inf")
    engine.tick()

    assert engine.state is EngineState.ERROR
    error = errors(events)[-1]
    assert error["code"] == "SIM_003"
    assert error["recoverable"] is False

    send(engine, CommandType.START)
    assert errors(events)[-1]["code"] == "COM_005"


def test_slow_cycle_emits_performance_warning(events):
    engine = SimulationEngine(emit=events.append, clock=FakeClock(step=0.05))
    ready_engine(engine)
    send(engine, CommandType.START)
    engine.tick()

    warning = errors(events)[-1]
    assert warning["code"] == "PERF_001"
    assert warning["severity"] == "warning"
    assert warning["details"]["targetTime"] == pytest.approx(100.0)
    assert engine.state is EngineState.RUNNING


def test_periodic_state_events(engine, events):
    ready_engine(engine)
    send(engine, CommandType.START)
    for _ in range(20):
        engine.tick()

    running = [e for e in of_type(events, EventType.STATE) if e.payload["state"] == "running"]
    assert len(running) == 3
    assert running[-1].payload["samples_processed"] == 20
    assert 0.0 <= running[-1].payload["performance"]["cpu_usage_estimate"] <= 100.0
