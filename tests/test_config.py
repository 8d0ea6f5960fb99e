from timevision.config import Settings


def test_defaults_match_metering_policy():
    settings = Settings()
    assert settings.max_daily_seconds == 57600
    assert settings.max_session_seconds == 21600
    assert settings.heartbeat_timeout_seconds == 300
    assert settings.watchdog_interval_seconds == 30
    assert settings.hub_cost_margin == 0.05


def test_pattern_threshold_is_seven_eighths_of_daily_cap():
    settings = Settings(max_daily_seconds=57600)
    assert settings.pattern_threshold_seconds == 50400


def test_database_path_resolved_creates_parent(tmp_path):
    settings = Settings(database_path=str(tmp_path / "nested" / "tv.db"))
    path = settings.database_path_resolved
    assert path.parent.exists()
