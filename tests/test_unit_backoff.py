from ops_bridge.utils.backoff import retry_delay_seconds, should_retry


def test_delay_schedule_indexed_by_attempt():
    delays = [30, 120, 600, 1800, 7200]
    assert retry_delay_seconds(1, delays) == 30
    assert retry_delay_seconds(2, delays) == 120
    assert retry_delay_seconds(5, delays) == 7200
    # last entry repeats past the end of the schedule
    assert retry_delay_seconds(9, delays) == 7200
    assert retry_delay_seconds(0, delays) == 30


def test_should_retry_stops_at_cap():
    assert should_retry(1, True, 5)
    assert should_retry(4, True, 5)
    assert not should_retry(5, True, 5)
    assert not should_retry(1, False, 5)
