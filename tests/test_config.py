import pytest

from sendqueue.config import DEFAULT_CONFIG, Settings
from sendqueue.repository import load_settings, set_config
from sendqueue.utils import iso_minutes_ago, now_iso, parse_job_id, to_iso


def test_defaults():
    s = Settings.from_mapping({})
    assert (s.batch_size, s.stuck_timeout, s.retry_limit, s.throttle_batch_delay) == (50, 5, 4, 0)
    assert s.delivery_command == ""
    assert Settings() == s
    assert set(DEFAULT_CONFIG) == {
        "batch_size", "stuck_timeout", "retry_limit", "throttle_batch_delay",
        "delivery_command", "command_timeout",
    }


def test_load_settings_reads_config_table(conn):
    set_config(conn, "batch_size", "7")
    set_config(conn, "throttle_batch_delay", "2")
    set_config(conn, "delivery_command", "  /bin/true  ")
    s = load_settings(conn)
    assert (s.batch_size, s.throttle_batch_delay, s.delivery_command) == (7, 2, "/bin/true")


@pytest.mark.parametrize("cfg", [
    {"batch_size": "0"},
    {"batch_size": "ten"},
    {"retry_limit": "-1"},
    {"stuck_timeout": "1.5"},
])
def test_invalid_settings_rejected(cfg):
    with pytest.raises(ValueError):
        Settings.from_mapping(cfg)


def test_zero_stuck_timeout_is_allowed():
    assert Settings.from_mapping({"stuck_timeout": "0"}).stuck_timeout == 0


def test_parse_job_id():
    assert parse_job_id(12) == 12
    assert parse_job_id(" 7 ") == 7
    for bad in (None, "", "  ", "x1", "0", "-3", True):
        with pytest.raises(ValueError):
            parse_job_id(bad)


def test_timestamps_sort_lexically(clock):
    earlier = to_iso(clock())
    clock.advance(microseconds=1)
    assert earlier < now_iso(clock())
    assert earlier.endswith(".000000Z")
    assert iso_minutes_ago(5, clock()) < earlier
