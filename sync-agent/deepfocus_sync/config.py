from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Config:
    # Remote session log base URL, e.g. "https://us-central1-<project>.cloudfunctions.net"
    base_url: str
    auth_token: str | None

    # Signed-in user bound to this agent (None = not authenticated)
    user_id: str | None

    # Persistence mirror
    state_dir: str
    storage_key: str

    # Cross-context messaging
    debounce_seconds: float
    processed_capacity: int
    processed_keep: int
    trusted_sources: tuple[str, ...]

    # Remote write retries
    retry_attempts: int
    retry_delay_seconds: float
    retry_multiplier: float

    # Activity monitor
    inactivity_threshold_seconds: float
    heartbeat_seconds: float
    auto_session_management: bool

    # Periodic elapsed-time push while a session is running
    duration_sync_interval_seconds: float

    # Local bridge service
    bridge_host: str
    bridge_port: int

    # Use the in-memory session log instead of HTTP (demo / local dev)
    offline: bool


def load_config(*, offline: bool | None = None) -> Config:
    offline = _env_bool("DEEPFOCUS_OFFLINE", False) if offline is None else offline
    base_url = os.getenv("DEEPFOCUS_BASE_URL", "").rstrip("/")
    if not base_url and not offline:
        raise RuntimeError("Missing DEEPFOCUS_BASE_URL (set DEEPFOCUS_OFFLINE=1 to run without a backend)")

    state_dir = os.getenv("DEEPFOCUS_STATE_DIR", os.path.expanduser("~/.deepfocus-sync"))

    return Config(
        base_url=base_url,
        auth_token=os.getenv("DEEPFOCUS_AUTH_TOKEN"),
        user_id=os.getenv("DEEPFOCUS_USER_ID"),
        state_dir=state_dir,
        storage_key=os.getenv("DEEPFOCUS_STORAGE_KEY", "deep-focus-storage"),
        debounce_seconds=float(os.getenv("DEEPFOCUS_DEBOUNCE_MS", "500")) / 1000.0,
        processed_capacity=int(os.getenv("DEEPFOCUS_PROCESSED_CAPACITY", "100")),
        processed_keep=int(os.getenv("DEEPFOCUS_PROCESSED_KEEP", "50")),
        trusted_sources=_env_list("DEEPFOCUS_TRUSTED_SOURCES", ("make10000hours", "extension")),
        retry_attempts=int(os.getenv("DEEPFOCUS_RETRY_ATTEMPTS", "3")),
        retry_delay_seconds=float(os.getenv("DEEPFOCUS_RETRY_DELAY_SECONDS", "1.0")),
        # 1.0 = fixed delay, >1.0 = exponential backoff
        retry_multiplier=float(os.getenv("DEEPFOCUS_RETRY_MULTIPLIER", "1.0")),
        inactivity_threshold_seconds=float(os.getenv("DEEPFOCUS_INACTIVITY_THRESHOLD_SECONDS", "300")),
        heartbeat_seconds=float(os.getenv("DEEPFOCUS_HEARTBEAT_SECONDS", "30")),
        auto_session_management=_env_bool("DEEPFOCUS_AUTO_SESSION_MANAGEMENT", True),
        duration_sync_interval_seconds=float(os.getenv("DEEPFOCUS_DURATION_SYNC_SECONDS", "60")),
        bridge_host=os.getenv("DEEPFOCUS_BRIDGE_HOST", "127.0.0.1"),
        bridge_port=int(os.getenv("DEEPFOCUS_BRIDGE_PORT", "8765")),
        offline=offline,
    )
