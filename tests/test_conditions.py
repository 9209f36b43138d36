from irrigation.schemas import ScheduleConditions
from irrigation.services.conditions import SensorSnapshot, evaluate


def test_fixed_mode_always_proceeds():
    decision = evaluate("fixed", None, SensorSnapshot())
    assert decision.proceed
    assert decision.reason is None


def test_weather_mode_skips_when_soil_too_dry():
    conditions = ScheduleConditions(min_moisture=40, skip_if_raining=True)
    snapshot = SensorSnapshot(moisture=35.0, temperature=30.0, raining=False)

    decision = evaluate("weather", conditions, snapshot)

    assert not decision.proceed
    assert "moisture" in decision.reason
    assert "35.0" in decision.reason


def test_weather_mode_proceeds_when_all_clauses_hold():
    conditions = ScheduleConditions(min_moisture=40, skip_if_raining=True)
    snapshot = SensorSnapshot(moisture=45.0, temperature=30.0, raining=False)

    assert evaluate("weather", conditions, snapshot).proceed


def test_smart_mode_skips_when_too_hot():
    conditions = ScheduleConditions(max_temperature=35)
    decision = evaluate("smart", conditions, SensorSnapshot(temperature=36.5))

    assert not decision.proceed
    assert "temperature 36.5C" in decision.reason


def test_rain_clause_skips_while_raining():
    conditions = ScheduleConditions(skip_if_raining=True)
    decision = evaluate("smart", conditions, SensorSnapshot(raining=True))

    assert not decision.proceed
    assert decision.reason == "skipped because it is raining"


def test_first_failing_clause_is_reported():
    conditions = ScheduleConditions(
        min_moisture=40, max_temperature=35, skip_if_raining=True
    )
    snapshot = SensorSnapshot(moisture=10.0, temperature=40.0, raining=True)

    decision = evaluate("weather", conditions, snapshot)

    assert decision.reason.startswith("moisture")


def test_missing_data_fails_safe():
    conditions = ScheduleConditions(
        min_moisture=40, max_temperature=35, skip_if_raining=True
    )

    assert evaluate("weather", conditions, SensorSnapshot()).reason == (
        "moisture reading unavailable"
    )
    assert evaluate(
        "weather", conditions, SensorSnapshot(moisture=50.0)
    ).reason == "temperature reading unavailable"
    assert evaluate(
        "weather", conditions, SensorSnapshot(moisture=50.0, temperature=20.0)
    ).reason == "rain status unavailable"


def test_unconfigured_clauses_are_ignored():
    conditions = ScheduleConditions()
    assert evaluate("smart", conditions, SensorSnapshot()).proceed


def test_evaluation_is_deterministic():
    conditions = ScheduleConditions(min_moisture=40, max_temperature=35)
    snapshot = SensorSnapshot(moisture=38.0, temperature=30.0, raining=False)

    decisions = {evaluate("weather", conditions, snapshot) for _ in range(5)}

    assert len(decisions) == 1
