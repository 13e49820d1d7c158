import os
from dataclasses import dataclass

GATEWAY_URL = os.getenv("GATEWAY_URL", "http://127.0.0.1:8180/command")
HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("HTTP_PORT", "8080"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# transaction ids with this prefix are never force-completed by a sweep
TEST_TXN_PREFIX = os.getenv("TEST_TXN_PREFIX", "test_")

SWEEP_ENABLED = os.getenv("SWEEP_ENABLED", "true").lower() == "true"
SWEEP_INTERVAL_SEC = float(os.getenv("SWEEP_INTERVAL_SEC", "7"))
SWEEP_CONCURRENCY = int(os.getenv("SWEEP_CONCURRENCY", "8"))
SWEEP_READING_TIMEOUT_SEC = float(os.getenv("SWEEP_READING_TIMEOUT_SEC", "3"))
FINAL_READING_TIMEOUT_SEC = float(os.getenv("FINAL_READING_TIMEOUT_SEC", "2"))
REMOTE_STOP_TIMEOUT_SEC = float(os.getenv("REMOTE_STOP_TIMEOUT_SEC", "5"))

NO_POWER_AFTER_SEC = int(os.getenv("NO_POWER_AFTER_SEC", "600"))          # 10 min
NO_POWER_MAX_DELTA = float(os.getenv("NO_POWER_MAX_DELTA", "0.1"))
STALE_AFTER_SEC = int(os.getenv("STALE_AFTER_SEC", "14400"))              # 4 h
STALE_MIN_DELTA = float(os.getenv("STALE_MIN_DELTA", "5"))

MONITOR_INTERVAL_SEC = float(os.getenv("MONITOR_INTERVAL_SEC", "10"))
MONITOR_READING_TIMEOUT_SEC = float(os.getenv("MONITOR_READING_TIMEOUT_SEC", "5"))
STOP_COOLDOWN_SEC = float(os.getenv("STOP_COOLDOWN_SEC", "30"))
HEARTBEAT_TIMEOUT_SEC = float(os.getenv("HEARTBEAT_TIMEOUT_SEC", "120"))
HEARTBEAT_CHECK_SEC = float(os.getenv("HEARTBEAT_CHECK_SEC", "30"))


@dataclass(frozen=True)
class Settings:
    """Runtime settings handed to every component.

    Defaults come from the environment variables above, so ``Settings()``
    reflects the process configuration while tests can override single
    fields.
    """

    gateway_url: str = GATEWAY_URL
    http_host: str = HTTP_HOST
    http_port: int = HTTP_PORT
    log_level: str = LOG_LEVEL
    test_txn_prefix: str = TEST_TXN_PREFIX

    sweep_enabled: bool = SWEEP_ENABLED
    sweep_interval_sec: float = SWEEP_INTERVAL_SEC
    sweep_concurrency: int = SWEEP_CONCURRENCY
    sweep_reading_timeout_sec: float = SWEEP_READING_TIMEOUT_SEC
    final_reading_timeout_sec: float = FINAL_READING_TIMEOUT_SEC
    remote_stop_timeout_sec: float = REMOTE_STOP_TIMEOUT_SEC

    no_power_after_sec: int = NO_POWER_AFTER_SEC
    no_power_max_delta: float = NO_POWER_MAX_DELTA
    stale_after_sec: int = STALE_AFTER_SEC
    stale_min_delta: float = STALE_MIN_DELTA

    monitor_interval_sec: float = MONITOR_INTERVAL_SEC
    monitor_reading_timeout_sec: float = MONITOR_READING_TIMEOUT_SEC
    stop_cooldown_sec: float = STOP_COOLDOWN_SEC
    heartbeat_timeout_sec: float = HEARTBEAT_TIMEOUT_SEC
    heartbeat_check_sec: float = HEARTBEAT_CHECK_SEC
