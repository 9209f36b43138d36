from datetime import datetime, timedelta, timezone

from irrigation.services.sensor_feed import SensorFeed

NOW = datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def test_unchanged_reading_only_refreshes_timestamp():
    clock = FakeClock(NOW)
    feed = SensorFeed(max_age_seconds=60, clock=clock)

    assert feed.update_reading("zone_1", moisture=40.0, temperature=25.0)
    clock.now = NOW + timedelta(seconds=50)
    assert not feed.update_reading("zone_1", moisture=40.0, temperature=25.0)

    # Still fresh because the repeat write refreshed the timestamp.
    clock.now = NOW + timedelta(seconds=100)
    assert feed.current_reading("zone_1").moisture == 40.0


def test_stale_readings_are_unavailable():
    clock = FakeClock(NOW)
    feed = SensorFeed(max_age_seconds=60, clock=clock)
    feed.update_reading("zone_1", moisture=40.0, temperature=25.0)
    feed.set_raining(True)

    clock.now = NOW + timedelta(minutes=5)

    assert feed.current_reading("zone_1") is None
    assert feed.is_raining() is None


def test_snapshot_uses_driest_and_hottest_zone():
    feed = SensorFeed(clock=lambda: NOW)
    feed.update_reading("zone_1", moisture=45.0, temperature=29.0)
    feed.update_reading("zone_2", moisture=38.0, temperature=31.5)
    feed.set_raining(False)

    snapshot = feed.snapshot(["zone_1", "zone_2"])

    assert snapshot.moisture == 38.0
    assert snapshot.temperature == 31.5
    assert snapshot.raining is False


def test_snapshot_missing_zone_makes_value_unavailable():
    feed = SensorFeed(clock=lambda: NOW)
    feed.update_reading("zone_1", moisture=45.0, temperature=None)

    snapshot = feed.snapshot(["zone_1", "zone_2"])

    assert snapshot.moisture is None
    assert snapshot.temperature is None
    assert snapshot.raining is None
