# tests/unit/config/test_settings_validation.py
from __future__ import annotations

import os
import socket
from datetime import timedelta

import pytest
from pydantic import ValidationError

from demand_refresh.config.settings import Environment, get_settings


def test_defaults(make_settings) -> None:
    s = make_settings()

    assert s.environment is Environment.TEST
    assert s.heartbeat_interval_s == 60
    assert s.staleness_threshold == timedelta(minutes=5)
    assert s.lease_timeout == timedelta(minutes=5)
    assert s.batch_size == 10
    assert s.processing_concurrency == 1
    assert s.quota_safety_buffer == 0.05
    assert s.presence_backend == "redis"


def test_staleness_must_exceed_heartbeat(make_settings) -> None:
    with pytest.raises(ValidationError, match="STALENESS_THRESHOLD_S"):
        make_settings(HEARTBEAT_INTERVAL_S="120", STALENESS_THRESHOLD_S="120")


def test_backoff_cap_must_not_be_below_base(make_settings) -> None:
    with pytest.raises(ValidationError, match="QUEUE_RETRY_BACKOFF_CAP_S"):
        make_settings(QUEUE_RETRY_BACKOFF_BASE_S="10", QUEUE_RETRY_BACKOFF_CAP_S="5")


def test_http_presence_requires_snapshot_url(make_settings) -> None:
    with pytest.raises(ValidationError, match="PRESENCE_SNAPSHOT_URL"):
        make_settings(PRESENCE_BACKEND="http")

    s = make_settings(PRESENCE_SNAPSHOT_URL="http://presence.local/snapshot")
    assert s.presence_backend == "http"


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("PRESENCE_BACKEND", "kafka"),
        ("QUEUE_BATCH_SIZE", "0"),
        ("QUOTA_SAFETY_BUFFER", "1.0"),
        ("ALERT_SUCCESS_RATE_THRESHOLD", "0"),
    ],
)
def test_out_of_range_values_are_rejected(make_settings, key: str, value: str) -> None:
    with pytest.raises(ValidationError):
        make_settings(**{key: value})


def test_resolved_worker_id(make_settings, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("WORKER_ID", raising=False)
    assert make_settings().resolved_worker_id() == f"{socket.gethostname()}:{os.getpid()}"
    assert make_settings(WORKER_ID="worker-7").resolved_worker_id() == "worker-7"


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()
