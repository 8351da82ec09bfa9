"""
ordersync Application Configuration
===================================

PURPOSE:
    Pydantic-Settings based configuration for the order-sync service.
    All settings can be overridden via environment variables (ORDERSYNC_ prefix)
    or a local .env file.
"""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "ordersync"
    debug: bool = False

    # Push transport (duplex order-update stream)
    push_enabled: bool = True
    push_url: str = "ws://localhost:8000/ws/orders"
    ws_ping_interval_s: float = 30.0
    ws_ping_timeout_s: float = 10.0
    ws_max_size: int = 1024 * 1024  # 1MB max frame

    # Order fetch API (snapshots for the poll fallback and on-demand loads)
    api_base_url: str = "http://localhost:8000/api"
    # Sent as X-API-Key on fetches and the push handshake when set
    api_key: Optional[str] = None
    fetch_timeout_s: float = 10.0

    # Reconnect backoff: min(base * 2^attempt, cap), give up after max_retries
    reconnect_base_delay_s: float = 1.0
    reconnect_max_delay_s: float = 30.0
    reconnect_max_retries: int = 5
    # Fraction of the delay randomised (+/-). 0 disables jitter.
    reconnect_jitter: float = 0.0

    # Poll fallback: runs alongside push as a consistency backstop
    poll_enabled: bool = True
    poll_interval_s: float = 30.0

    # Bounded in-memory structures
    pending_max: int = 1000          # PendingUpdate queue (oldest evicted)
    dedup_cache_size: int = 10_000   # (order_id, update_type) keys remembered by the engine
    event_queue_size: int = 256      # Per-subscriber change-event buffer

    # Logging
    log_dir: Optional[str] = "logs"
    log_file: str = "ordersync.jsonl"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "ORDERSYNC_"


settings = Settings()
