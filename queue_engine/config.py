"""Configuration for the queue intelligence engine (store, routing, forecasting, anomalies)."""

import os

REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
# "redis" for the shared store, "memory" for a single-process store (local runs).
STORE_BACKEND: str = os.environ.get("STORE_BACKEND", "redis")
# Timezone used for "today" and hour-of-day bucketing.
ENGINE_TIMEZONE: str = os.environ.get("ENGINE_TIMEZONE", "UTC")
# Bearer token for the scheduled sweep endpoint.
CRON_SECRET: str = os.environ.get("CRON_SECRET", "")
REDIS_CONN_TIMEOUT: int = int(os.environ.get("REDIS_CONN_TIMEOUT", "5"))

# --- Routing ---
DEFAULT_ROUTING_STRATEGY: str = os.environ.get("DEFAULT_ROUTING_STRATEGY", "round_robin")
DEFAULT_LOAD_BALANCE_WEIGHT: float = float(os.environ.get("DEFAULT_LOAD_BALANCE_WEIGHT", "0.5"))
MIN_PROFICIENCY = 1
MAX_PROFICIENCY = 10

# --- Demand forecasting ---
FORECAST_HISTORY_DAYS: int = int(os.environ.get("FORECAST_HISTORY_DAYS", "28"))
# Index = weeks ago; older weeks reuse the last weight.
FORECAST_WEEK_WEIGHTS: tuple[float, ...] = (0.4, 0.3, 0.2, 0.1)
DEFAULT_AVG_SERVICE_MINUTES: float = float(os.environ.get("DEFAULT_AVG_SERVICE_MINUTES", "10"))
DEFAULT_SLA_TARGET_MINUTES: float = float(os.environ.get("DEFAULT_SLA_TARGET_MINUTES", "15"))

# --- Anomaly detection ---
WAIT_WINDOW_HOURS: int = int(os.environ.get("WAIT_WINDOW_HOURS", "4"))
DEDUP_WINDOW_HOURS: int = int(os.environ.get("DEDUP_WINDOW_HOURS", "4"))
CSAT_WINDOW_DAYS: int = int(os.environ.get("CSAT_WINDOW_DAYS", "7"))
TRAFFIC_BASELINE_DAYS: int = int(os.environ.get("TRAFFIC_BASELINE_DAYS", "7"))
MIN_WAIT_SAMPLES = 3
MIN_NO_SHOW_SAMPLES = 5
MIN_CSAT_SAMPLES = 5
SATISFIED_RATING = 4
ANOMALY_SWEEP_WORKERS: int = int(os.environ.get("ANOMALY_SWEEP_WORKERS", "4"))
ANOMALY_SWEEP_HOURS: int = int(os.environ.get("ANOMALY_SWEEP_HOURS", "4"))

# medium/high/critical cut-offs per anomaly type
WAIT_TIME_THRESHOLDS = {"medium": 20.0, "high": 35.0, "critical": 50.0}  # minutes
NO_SHOW_THRESHOLDS = {"medium": 15.0, "high": 25.0, "critical": 40.0}  # percent
CSAT_THRESHOLDS = {"medium": 70.0, "high": 50.0, "critical": 30.0}  # percent, lower is worse
TRAFFIC_SPIKE_THRESHOLDS = {"medium": 1.5, "high": 2.0, "critical": 3.0}  # x daily average
