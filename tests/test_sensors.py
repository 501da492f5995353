from __future__ import annotations

import threading

import pytest

from tpmsmon.errors import ThresholdOutOfRange, UnknownSensor
from tpmsmon.receiver.frames import SensorReading
from tpmsmon.receiver.sensors import (
    SensorStateEngine,
    SensorStatus,
    Thresholds,
    TirePosition,
    classify_status,
    effective_status,
    is_alarm_condition,
    is_stale,
)


def reading(sensor_id=1, pressure=32, temperature=75, at=100.0) -> SensorReading:
    return SensorReading(sensor_id=sensor_id, pressure_psi=pressure, temperature_f=temperature, received_at=at)


@pytest.mark.parametrize("temperature", [0, 75, 200, 255])
def test_zero_pressure_is_dormant(temperature):
    assert classify_status(0, temperature, Thresholds()) is SensorStatus.DORMANT
    wide = Thresholds(target_pressure=10, pressure_deviation_percent=50)
    assert classify_status(0, temperature, wide) is SensorStatus.DORMANT


@pytest.mark.parametrize(
    "pressure,temperature,expected",
    [
        (32, 75, SensorStatus.NORMAL),
        (14, 75, SensorStatus.LOW_PRESSURE),
        (55, 75, SensorStatus.VERY_HIGH_PRESSURE),
        (27, 75, SensorStatus.LOW_PRESSURE),
        (37, 75, SensorStatus.HIGH_PRESSURE),
        (32, 31, SensorStatus.COLD_TEMPERATURE),
        (32, 121, SensorStatus.OVERHEATING),
        (32, 91, SensorStatus.HOT_TEMPERATURE),
        (32, 59, SensorStatus.COLD_TEMPERATURE),
        (32, 61, SensorStatus.NORMAL),
        (32, 89, SensorStatus.NORMAL),
        (14, 200, SensorStatus.LOW_PRESSURE),
        (37, 200, SensorStatus.HIGH_PRESSURE),
    ],
)
def test_classification_order(pressure, temperature, expected):
    assert classify_status(pressure, temperature, Thresholds()) is expected


def test_absolute_floor_beats_deviation_band():
    # Band is [12.8, 19.2]; 14 PSI sits inside it but under the absolute floor
    thresholds = Thresholds(target_pressure=16, pressure_deviation_percent=20)
    assert classify_status(14, 75, thresholds) is SensorStatus.LOW_PRESSURE


def test_alarm_policy():
    alarms = {status for status in SensorStatus if is_alarm_condition(status)}
    assert alarms == {
        SensorStatus.LOW_PRESSURE,
        SensorStatus.VERY_HIGH_PRESSURE,
        SensorStatus.OVERHEATING,
    }


def test_threshold_bounds():
    thresholds = Thresholds()
    assert thresholds.pressure_min == pytest.approx(27.2)
    assert thresholds.pressure_max == pytest.approx(36.8)
    assert thresholds.temperature_min == pytest.approx(60.0)
    assert thresholds.temperature_max == pytest.approx(90.0)


def test_ingest_creates_then_updates():
    engine = SensorStateEngine()
    first = engine.ingest(reading(pressure=32, at=1.0))
    assert first.created
    assert first.record.status is SensorStatus.NORMAL
    second = engine.ingest(reading(pressure=14, at=2.0))
    assert not second.created
    assert second.record.status is SensorStatus.LOW_PRESSURE
    assert second.record.is_alarm_condition
    assert engine.get(1).last_signal_at == 2.0


def test_subscribers_receive_updates():
    engine = SensorStateEngine()
    seen = []
    engine.subscribe(seen.append)
    engine.ingest(reading(sensor_id=4))
    engine.ingest(reading(sensor_id=4, pressure=55))
    assert [update.created for update in seen] == [True, False]
    assert seen[-1].record.status is SensorStatus.VERY_HIGH_PRESSURE


def test_get_all_is_a_snapshot():
    engine = SensorStateEngine()
    engine.ingest(reading(sensor_id=1))
    snapshot = engine.get_all()
    snapshot.clear()
    engine.ingest(reading(sensor_id=2))
    assert set(engine.get_all()) == {1, 2}
    assert engine.get(3) is None


def test_assign_moves_sensor_between_positions():
    engine = SensorStateEngine()
    engine.ingest(reading(sensor_id=5))
    engine.assign(5, TirePosition.VEHICLE_FRONT_LEFT)
    record = engine.assign(5, TirePosition.TRAILER_REAR_RIGHT)
    assert record.assigned_position is TirePosition.TRAILER_REAR_RIGHT
    assert engine.occupant(TirePosition.VEHICLE_FRONT_LEFT) is None
    assert engine.assignments() == {TirePosition.TRAILER_REAR_RIGHT: 5}


def test_assign_vacates_previous_holder():
    engine = SensorStateEngine()
    engine.ingest(reading(sensor_id=1))
    engine.ingest(reading(sensor_id=2))
    engine.assign(1, TirePosition.VEHICLE_REAR_LEFT)
    engine.assign(2, TirePosition.VEHICLE_REAR_LEFT)
    assert engine.get(1).assigned_position is TirePosition.UNASSIGNED
    assert engine.occupant(TirePosition.VEHICLE_REAR_LEFT).sensor_id == 2


def test_assignment_survives_new_readings():
    engine = SensorStateEngine()
    engine.ingest(reading(sensor_id=1))
    engine.assign(1, TirePosition.VEHICLE_FRONT_RIGHT)
    update = engine.ingest(reading(sensor_id=1, pressure=30))
    assert update.record.assigned_position is TirePosition.VEHICLE_FRONT_RIGHT


def test_assign_unknown_sensor():
    engine = SensorStateEngine()
    with pytest.raises(UnknownSensor):
        engine.assign(99, TirePosition.VEHICLE_FRONT_LEFT)


def test_assign_unassigned_slot_rejected():
    engine = SensorStateEngine()
    engine.ingest(reading(sensor_id=1))
    with pytest.raises(ValueError):
        engine.assign(1, TirePosition.UNASSIGNED)


def test_update_thresholds_out_of_range_leaves_previous():
    engine = SensorStateEngine()
    engine.ingest(reading(sensor_id=1))
    before = engine.get(1).thresholds
    with pytest.raises(ThresholdOutOfRange) as excinfo:
        engine.update_thresholds(200, 75, 15, 20)
    assert excinfo.value.field == "target_pressure"
    assert engine.get(1).thresholds == before
    assert engine.default_thresholds == before


@pytest.mark.parametrize(
    "values,field",
    [
        ((9, 75, 15, 20), "target_pressure"),
        ((32, 151, 15, 20), "target_temperature"),
        ((32, 75, 0.5, 20), "pressure_deviation_percent"),
        ((32, 75, 15, 51), "temperature_deviation_percent"),
    ],
)
def test_update_thresholds_names_field(values, field):
    engine = SensorStateEngine()
    with pytest.raises(ThresholdOutOfRange) as excinfo:
        engine.update_thresholds(*values)
    assert excinfo.value.field == field


def test_global_threshold_update_recomputes_status():
    engine = SensorStateEngine()
    engine.ingest(reading(sensor_id=1, pressure=40))
    assert engine.get(1).status is SensorStatus.HIGH_PRESSURE
    engine.update_thresholds(40, 75, 10, 20)
    assert engine.get(1).status is SensorStatus.NORMAL
    created = engine.ingest(reading(sensor_id=2, pressure=40)).record
    assert created.status is SensorStatus.NORMAL


def test_per_sensor_threshold_update():
    engine = SensorStateEngine()
    engine.ingest(reading(sensor_id=1, pressure=40))
    engine.ingest(reading(sensor_id=2, pressure=40))
    engine.update_thresholds(40, 75, 10, 20, sensor_id=2)
    assert engine.get(1).status is SensorStatus.HIGH_PRESSURE
    assert engine.get(2).status is SensorStatus.NORMAL
    with pytest.raises(UnknownSensor):
        engine.update_thresholds(40, 75, 10, 20, sensor_id=42)


def test_staleness_is_independent_of_status():
    engine = SensorStateEngine()
    record = engine.ingest(reading(sensor_id=1, pressure=32, at=100.0)).record
    assert record.status is SensorStatus.NORMAL
    assert not is_stale(record, timeout=30.0, now=120.0)
    assert is_stale(record, timeout=30.0, now=130.0)
    assert record.status is SensorStatus.NORMAL
    assert effective_status(record, timeout=30.0, now=131.0) is SensorStatus.NO_SIGNAL
    assert record.has_recent_signal(30.0, now=110.0)
    assert [r.sensor_id for r in engine.stale_sensors(30.0, now=200.0)] == [1]
    assert engine.active_sensors(30.0, now=200.0) == []


def test_announcement_text():
    engine = SensorStateEngine()
    engine.ingest(reading(sensor_id=17, pressure=32, temperature=75))
    assert engine.get(17).announcement_text == "Sensor 17 pressure 32 PSI temperature 75 degrees"
    record = engine.assign(17, TirePosition.VEHICLE_FRONT_LEFT)
    assert record.announcement_text == "Vehicle Front Left pressure 32 PSI temperature 75 degrees"
    assert record.status_description == "Normal"


def test_tire_position_parse():
    assert TirePosition.parse("vfl") is TirePosition.VEHICLE_FRONT_LEFT
    assert TirePosition.parse("trailer_rear_right") is TirePosition.TRAILER_REAR_RIGHT
    assert TirePosition.TRAILER_FRONT_LEFT.index == 4
    assert len(TirePosition.slots()) == 8
    with pytest.raises(ValueError):
        TirePosition.parse("spare")


def test_concurrent_ingest_and_read():
    engine = SensorStateEngine()
    errors = []

    def writer(sensor_id: int) -> None:
        for i in range(200):
            engine.ingest(reading(sensor_id=sensor_id, pressure=20 + i % 20, at=float(i)))

    def reader() -> None:
        for _ in range(200):
            for record in engine.get_all().values():
                if record.status is None:
                    errors.append(record)

    threads = [threading.Thread(target=writer, args=(sensor_id,)) for sensor_id in range(4)]
    threads.append(threading.Thread(target=reader))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert errors == []
    assert set(engine.get_all()) == {0, 1, 2, 3}
    assert all(record.last_signal_at == 199.0 for record in engine.get_all().values())
