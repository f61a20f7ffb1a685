"""Signed-webhook verification for the ingest endpoint.

Check order matters: credential, required headers, algorithm, freshness,
signature, and only then the nonce reservation. A request that fails freshness
or signature never touches the nonce cache, so a forged or stale request cannot
burn a nonce that a legitimate sender is about to use.

The nonce and idempotency caches are explicit objects with an injected clock
and TTL. One of each is built per process (see ``api.deps``) and passed to the
gate and service; tests build their own with a fake clock.
"""
from __future__ import annotations

import hashlib
import hmac
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional, TypeVar

from ops_bridge.config import INGEST_SECURITY
from ops_bridge.errors import AuthenticationError, ReplayRejectedError
from ops_bridge.utils import get_logger
from ops_bridge.utils.normalize import parse_iso
from ops_bridge.utils.time import Clock, utc_now

logger = get_logger(__name__)

T = TypeVar("T")

HEADER_SIGNATURE = "x-signature"
HEADER_ALGORITHM = "x-signature-algorithm"
HEADER_TIMESTAMP = "x-timestamp"
HEADER_NONCE = "x-nonce"
HEADER_IDEMPOTENCY = "x-idempotency-key"


class NonceCache:
    """Seen-nonce set with a sliding TTL; check-and-store is atomic."""

    def __init__(self, ttl: timedelta, clock: Clock = utc_now):
        self.ttl = ttl
        self.clock = clock
        self._seen: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _purge(self, now: datetime) -> None:
        expired = [nonce for nonce, expires_at in self._seen.items() if expires_at <= now]
        for nonce in expired:
            del self._seen[nonce]

    def check_and_store(self, nonce: str) -> None:
        with self._lock:
            now = self.clock()
            self._purge(now)
            if nonce in self._seen:
                raise ReplayRejectedError("NONCE_REUSED")
            self._seen[nonce] = now + self.ttl

    def __len__(self) -> int:
        with self._lock:
            self._purge(self.clock())
            return len(self._seen)


class IdempotencyStore:
    """In-process idempotency-key cache in front of the durable unique column.

    ``claim`` runs ``factory`` at most once per live key. A second caller for
    the same key blocks until the first finished and receives its value with
    ``replay=True``.
    """

    def __init__(self, ttl: timedelta, clock: Clock = utc_now):
        self.ttl = ttl
        self.clock = clock
        self._values: dict[str, tuple[Any, datetime]] = {}
        self._key_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _purge(self, now: datetime) -> None:
        expired = [key for key, (_, expires_at) in self._values.items() if expires_at <= now]
        for key in expired:
            del self._values[key]
            lock = self._key_locks.get(key)
            if lock is not None and not lock.locked():
                del self._key_locks[key]

    def _lock_for(self, key: str) -> threading.Lock:
        with self._lock:
            self._purge(self.clock())
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self.clock():
                self._purge(self.clock())
                return None
            return value

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            now = self.clock()
            self._purge(now)
            self._values[key] = (value, now + self.ttl)

    def claim(self, key: str, factory: Callable[[], tuple[T, bool]]) -> tuple[T, bool]:
        """Return ``(value, replay)``; ``factory`` returns ``(value, replay)`` too."""
        with self._lock_for(key):
            cached = self.get(key)
            if cached is not None:
                return cached, True
            value, replay = factory()
            self.put(key, value)
            return value, replay

    def forget(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._purge(self.clock())
            return len(self._values)


@dataclass(frozen=True, slots=True)
class VerifiedRequest:
    idempotency_key: str
    nonce: str
    payload_hash: str
    timestamp: datetime
    signature_verified: bool = True


def payload_sha256(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def canonical_string(method: str, path: str, timestamp: str, nonce: str, idempotency_key: str, raw_body: bytes) -> str:
    return "\n".join([method.upper(), path, timestamp, nonce, idempotency_key, payload_sha256(raw_body)])


def sign(secret: str, method: str, path: str, timestamp: str, nonce: str, idempotency_key: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 a client sends in ``x-signature``."""
    message = canonical_string(method, path, timestamp, nonce, idempotency_key, raw_body)
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def _header(headers: Mapping[str, Any], name: str) -> Optional[str]:
    for key in (name, name.lower(), name.upper()):
        value = headers.get(key)
        if isinstance(value, str):
            return value
        if isinstance(value, (list, tuple)) and value and isinstance(value[0], str):
            return value[0]
    return None


class IngestSecurityGate:
    def __init__(
        self,
        nonce_cache: NonceCache,
        settings: Optional[Mapping[str, Any]] = None,
        clock: Clock = utc_now,
    ):
        self.nonce_cache = nonce_cache
        self.settings = settings if settings is not None else INGEST_SECURITY
        self.clock = clock

    @property
    def drift(self) -> timedelta:
        return timedelta(minutes=float(self.settings["timestamp_drift_minutes"]))

    def validate_request(self, method: str, path: str, headers: Mapping[str, Any], raw_body: bytes) -> VerifiedRequest:
        authorization = _header(headers, "authorization")
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("MISSING_OR_INVALID_AUTHORIZATION")
        token = authorization[len("Bearer "):].strip()
        if not hmac.compare_digest(token.encode("utf-8"), str(self.settings["service_token"]).encode("utf-8")):
            raise AuthenticationError("INVALID_SERVICE_TOKEN")

        signature = _header(headers, HEADER_SIGNATURE)
        algorithm = _header(headers, HEADER_ALGORITHM)
        timestamp = _header(headers, HEADER_TIMESTAMP)
        nonce = _header(headers, HEADER_NONCE)
        idempotency_key = _header(headers, HEADER_IDEMPOTENCY)
        if not signature or not algorithm or not timestamp or not nonce or not idempotency_key:
            raise AuthenticationError("MISSING_REQUIRED_INGEST_HEADERS")

        if algorithm != self.settings["signature_algorithm"]:
            raise AuthenticationError("UNSUPPORTED_SIGNATURE_ALGORITHM")

        sent_at = parse_iso(timestamp)
        if sent_at is None:
            raise ReplayRejectedError("INVALID_TIMESTAMP_FORMAT")
        if abs(self.clock() - sent_at) > self.drift:
            logger.warning("Ingest request outside freshness window", timestamp=timestamp, nonce=nonce)
            raise ReplayRejectedError("TIMESTAMP_DRIFT_EXCEEDED")

        expected = sign(
            str(self.settings["service_secret"]), method, path, timestamp, nonce, idempotency_key, raw_body
        )
        if not hmac.compare_digest(signature.strip().lower().encode("utf-8"), expected.encode("utf-8")):
            raise AuthenticationError("SIGNATURE_MISMATCH")

        self.nonce_cache.check_and_store(nonce)
        return VerifiedRequest(
            idempotency_key=idempotency_key,
            nonce=nonce,
            payload_hash=payload_sha256(raw_body),
            timestamp=sent_at,
        )


def build_nonce_cache(clock: Clock = utc_now) -> NonceCache:
    return NonceCache(timedelta(minutes=float(INGEST_SECURITY["nonce_ttl_minutes"])), clock)


def build_idempotency_store(clock: Clock = utc_now) -> IdempotencyStore:
    return IdempotencyStore(timedelta(minutes=float(INGEST_SECURITY["idempotency_ttl_minutes"])), clock)


__all__ = [
    "NonceCache",
    "IdempotencyStore",
    "VerifiedRequest",
    "IngestSecurityGate",
    "canonical_string",
    "payload_sha256",
    "sign",
    "build_nonce_cache",
    "build_idempotency_store",
]
