import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server
    deckterm_host: str = "0.0.0.0"
    deckterm_port: int = 4173

    # Logging
    deckterm_log_level: str = "info"

    # CORS
    deckterm_cors_origins: str = "*"

    # Shell
    deckterm_shell: str = os.environ.get("SHELL", "/bin/bash")
    deckterm_default_cols: int = 120
    deckterm_default_rows: int = 30

    # Admission
    deckterm_max_terminals: int = 10  # Global concurrent cap
    deckterm_max_terminals_per_owner: int = 10
    deckterm_rate_limit_window: float = 60.0  # seconds
    deckterm_rate_limit_max: int = 20  # creations per window

    # Idle reaping (0 = disabled)
    deckterm_idle_timeout: float = 1800.0
    deckterm_idle_sweep_interval: float = 60.0

    # Persistence (tmux)
    deckterm_persistence: bool = False
    deckterm_tmux_binary: str = "tmux"
    deckterm_tmux_prefix: str = "deckterm"
    deckterm_tmux_command_timeout: float = 5.0

    # Identity (headers set by the fronting auth proxy)
    deckterm_auth_required: bool = False
    deckterm_auth_user_header: str = "X-Auth-Request-User"
    deckterm_auth_email_header: str = "X-Auth-Request-Email"
    deckterm_local_owner_id: str = "local"
    deckterm_local_owner_email: str = "local@localhost"

    # Companion upstream service (None = proxy disabled)
    deckterm_upstream_url: str | None = None
    deckterm_upstream_failure_threshold: int = 5
    deckterm_upstream_reset_timeout: float = 30.0

    # HTTP client timeouts (seconds)
    deckterm_http_connect_timeout: float = 5.0
    deckterm_http_read_timeout: float = 60.0

    # Reconnecting client
    deckterm_heartbeat_interval: float = 25.0
    deckterm_heartbeat_timeout: float = 5.0
    deckterm_reconnect_base_delay: float = 1.0
    deckterm_reconnect_max_delay: float = 30.0
    deckterm_reconnect_max_retries: int = 10

    model_config = {"env_prefix": "", "case_sensitive": False, "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
