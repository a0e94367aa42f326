import os
import socket
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./fibertrace_server.db")

    # On-device record store
    local_store_url: str = os.getenv("LOCAL_STORE_URL", "sqlite:///./fibertrace_local.db")
    local_store_namespace: str = os.getenv("LOCAL_STORE_NAMESPACE", "fibertrace")
    local_store_write_retries: int = int(os.getenv("LOCAL_STORE_WRITE_RETRIES", "2"))
    device_id: str = os.getenv("FIBERTRACE_DEVICE_ID", socket.gethostname())
    change_history_limit: int = int(os.getenv("CHANGE_HISTORY_LIMIT", "100"))

    # Remote transport
    sync_remote_url: str | None = os.getenv("SYNC_REMOTE_URL")
    sync_remote_token: str | None = os.getenv("SYNC_REMOTE_TOKEN")
    sync_remote_timeout_seconds: int = int(os.getenv("SYNC_REMOTE_TIMEOUT_SECONDS", "30"))
    sync_remote_retries: int = int(os.getenv("SYNC_REMOTE_RETRIES", "3"))
    sync_remote_retry_delay: float = float(os.getenv("SYNC_REMOTE_RETRY_DELAY", "1.0"))

    # Sync triggers
    sync_interval_seconds: int = int(os.getenv("SYNC_INTERVAL_SECONDS", "300"))
    sync_batch_size: int = int(os.getenv("SYNC_BATCH_SIZE", "200"))  # records per push call
    connectivity_debounce_seconds: float = float(os.getenv("CONNECTIVITY_DEBOUNCE_SECONDS", "2"))
    connectivity_probe_url: str | None = os.getenv("CONNECTIVITY_PROBE_URL")

    # Tracing
    otel_enabled: bool = os.getenv("OTEL_ENABLED", "false").lower() in {"1", "true", "yes", "on"}
    otel_service_name: str = os.getenv("OTEL_SERVICE_NAME", "fibertrace")


settings = Settings()
