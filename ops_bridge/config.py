"""Runtime configuration & tunable integrity rules.

Every knob that operators may need to turn (ingest credentials, replay windows,
retry schedule, gate thresholds, retention windows) lives here as a module-level
settings dict read once from the environment. Tests monkeypatch dict entries
instead of re-reading the environment.
"""
from __future__ import annotations

import os

_TRUE_VALUES = {"1", "true", "yes", "on"}


def read_bool(key: str, fallback: bool) -> bool:
	raw = os.getenv(key)
	if raw is None:
		return fallback
	return raw.strip().lower() in _TRUE_VALUES


def read_number(key: str, fallback: float, min_value: float | None = None) -> float:
	raw = os.getenv(key)
	if raw is None or not raw.strip():
		return fallback
	try:
		value = float(raw)
	except ValueError:
		return fallback
	if min_value is not None and value < min_value:
		return fallback
	return value


def read_delays(key: str, fallback: list[int]) -> list[int]:
	"""Parse a comma separated list of positive delay seconds."""
	raw = os.getenv(key)
	if raw is None or not raw.strip():
		return list(fallback)
	delays: list[int] = []
	for part in raw.split(","):
		part = part.strip()
		if part.isdigit() and int(part) > 0:
			delays.append(int(part))
	return delays or list(fallback)


# ------------------------------- Source systems ------------------------------ #
# The web booking system ("balisnap") and the operations system of record
# ("bstadmin"). Either URL may be unset; missing feeds yield warnings, not errors.
SOURCE_SETTINGS: dict[str, str | None] = {
	"web_system": "balisnap",
	"ops_system": "bstadmin",
	"balisnap_db_url": os.getenv("BALISNAP_DB_URL") or None,
	"bstadmin_db_url": os.getenv("BSTADMIN_DB_URL") or None,
}

# ------------------------------ Ingest security ------------------------------ #
INGEST_SECURITY: dict[str, str | float] = {
	"service_token": os.getenv("INGEST_SERVICE_TOKEN", "dev-service-token"),
	"service_secret": os.getenv("INGEST_SERVICE_SECRET", "dev-service-secret"),
	"signature_algorithm": "HMAC-SHA256",
	"timestamp_drift_minutes": read_number("INGEST_TIMESTAMP_DRIFT_MINUTES", 5, 0),
	"nonce_ttl_minutes": read_number("INGEST_NONCE_TTL_MINUTES", 10, 1),
	# In-process idempotency cache; the durable guard is the unique column.
	"idempotency_ttl_minutes": read_number("INGEST_IDEMPOTENCY_TTL_MINUTES", 35 * 24 * 60, 1),
}

# ------------------------------- Retry Policy -------------------------------- #
RETRY_POLICY: dict[str, int | list[int]] = {
	"delays_seconds": read_delays("INGEST_RETRY_DELAYS_SECONDS", [30, 120, 600, 1800, 7200]),
	"max_attempts": int(read_number("INGEST_MAX_ATTEMPTS", 5, 1)),
}

# ---------------------------------- Queue ------------------------------------ #
QUEUE_SETTINGS: dict[str, object] = {
	"priorities": {  # Lower number = higher priority
		"high": 0,
		"normal": 5,
		"low": 10,
	},
	"warn_depth": 1000,
	"max_in_memory": 5000,
	"use_redis": read_bool("INGEST_QUEUE_USE_REDIS", False),
	"redis_url": os.getenv("INGEST_REDIS_URL", "redis://localhost:6379/0"),
	"redis_ready_key": "ops_bridge:ingest:ready",
	"redis_scheduled_key": "ops_bridge:ingest:scheduled",
	"redis_stats_key": "ops_bridge:ingest:stats",
	"redis_health_check_timeout": 2.0,
	"poll_timeout_seconds": 5.0,
}

# ------------------------------- Feature flags ------------------------------- #
# Off by default so a fresh deployment never accepts traffic until enabled.
FEATURE_FLAGS: dict[str, bool] = {
	"webhook_enabled": read_bool("INGEST_WEBHOOK_ENABLED", False),
	"queue_enabled": read_bool("INGEST_QUEUE_ENABLED", False),
	"replay_enabled": read_bool("INGEST_REPLAY_ENABLED", False),
}

# ------------------------------ Gate thresholds ------------------------------ #
GATE_THRESHOLDS: dict[str, float | bool] = {
	"max_duplicate_identity_ratio": read_number("GATE_MAX_DUPLICATE_IDENTITY_RATIO", 0, 0),
	"max_payment_orphan_ratio": read_number("GATE_MAX_PAYMENT_ORPHAN_RATIO", 0, 0),
	"max_ops_done_not_paid_ratio": read_number("QUALITY_MAX_OPS_DONE_NOT_PAID_RATIO", 0.01, 0),
	"max_unmapped_ratio_percent": read_number("QUALITY_MAX_UNMAPPED_RATIO_PERCENT", 5, 0),
	"allow_empty_catalog_denominator": read_bool("QUALITY_ALLOW_EMPTY_CATALOG_DENOMINATOR", False),
	"max_pax_mismatch_ratio_percent": read_number("GATE_BOOKING_MAX_PAX_MISMATCH_RATIO_PERCENT", 1, 0),
	"max_global_mismatch_ratio": read_number("RECON_MAX_GLOBAL_MISMATCH_RATIO", 0.01, 0),
}

# ---------------------------------- Sync ------------------------------------- #
SYNC_SETTINGS: dict[str, object] = {
	"dry_run": read_bool("RECON_DRY_RUN", False),
	"batch_code": os.getenv("RECON_BATCH_CODE", "manual"),
	"report_dir": os.getenv("RECON_REPORT_DIR", "reports/recon"),
	"fanout_workers": int(read_number("RECON_FANOUT_WORKERS", 4, 1)),
}

# -------------------------------- Retention ---------------------------------- #
RETENTION_SETTINGS: dict[str, int] = {
	"idempotency_ttl_days": int(read_number("INGEST_IDEMPOTENCY_TTL_DAYS", 35, 1)),
	"dlq_retention_days": int(read_number("INGEST_DLQ_RETENTION_DAYS", 30, 1)),
	"unmapped_retention_days": int(read_number("INGEST_UNMAPPED_RETENTION_DAYS", 90, 1)),
}

__all__ = [
	"read_bool",
	"read_number",
	"read_delays",
	# Rule groups
	"SOURCE_SETTINGS",
	"INGEST_SECURITY",
	"RETRY_POLICY",
	"QUEUE_SETTINGS",
	"FEATURE_FLAGS",
	"GATE_THRESHOLDS",
	"SYNC_SETTINGS",
	"RETENTION_SETTINGS",
]
