import numpy as np
import pytest

from stability_analysis import StabilityAnalyzer, fopdt_step_response, rmse
from thermal_model import PlantModel


def test_analytic_step_response():
    response = fopdt_step_response([0.0, 20.0, 1e4], K=5.0, tau=20.0, T_amb=25.0)
    assert response[0] == 25.0
    assert response[1] == pytest.approx(25.0 + 5.0 * (1 - np.exp(-1.0)))
    assert response[2] == pytest.approx(30.0)

    cooling = fopdt_step_response([1e4], K=5.0, tau=20.0, T_amb=25.0, mode="cooling")
    assert cooling[0] == pytest.approx(20.0)

    with pytest.raises(ValueError):
        fopdt_step_response([1.0], K=5.0, tau=0.0, T_amb=25.0)


def test_rmse():
    assert rmse([1.0, 2.0], [1.0, 2.0]) == 0.0
    assert rmse([0.0, 0.0], [3.0, 4.0]) == pytest.approx(np.sqrt(12.5))
    with pytest.raises(ValueError):
        rmse([1.0], [1.0, 2.0])


def test_moderate_tuning_is_stable():
    analyzer = StabilityAnalyzer(K=5.0, tau=20.0, L=2.0)
    result = analyzer.analyze_stability(kp=0.5, ki=0.05)
    assert result["stable"]
    assert result["max_pole_real"] < 0.0
    assert result["phase_margin"] > 30.0


def test_aggressive_tuning_is_unstable():
    analyzer = StabilityAnalyzer(K=5.0, tau=20.0, L=2.0)
    result = analyzer.analyze_stability(kp=20.0, ki=0.05)
    # The reported margin comes from a high-frequency crossover and looks healthy
    assert not result["stable"]
    assert result["max_pole_real"] > 0.0


def test_from_plant_and_frequency_response():
    plant = PlantModel(K=5.0, tau=20.0, L=2.0, T_amb=25.0, mode="cooling")
    analyzer = StabilityAnalyzer.from_plant(plant)
    assert analyzer.mode == "cooling"

    bode = analyzer.frequency_response(kp=0.5, ki=0.05, kd=1.0)
    assert list(bode.columns) == ["omega", "magnitude_db", "phase_deg"]
    assert len(bode) == 500
    assert bode["magnitude_db"].iloc[0] > bode["magnitude_db"].iloc[-1]


def test_derivative_filter_time():
    # alpha = 0.5 at N*Ts = 1
    assert StabilityAnalyzer.derivative_filter_time(10.0, 0.1) == pytest.approx(0.1 / np.log(2))
