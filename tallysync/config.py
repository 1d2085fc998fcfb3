import os


class Config:
    """Reads device configuration from environment variables."""

    def __init__(self):
        self.device_id = os.getenv("DEVICE_ID", "device-1")
        self.role = os.getenv("DEVICE_ROLE", "phone").lower()
        self.http_port = int(os.getenv("HTTP_PORT", "8000"))
        self.data_dir = os.getenv("DATA_DIR", "/data")
        self.storage_key = os.getenv("STORAGE_KEY", "saved_categories")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        # base url of the paired device, e.g. "http://watch:8000"
        self.peer_url = os.getenv("PEER_URL", "").strip().rstrip("/")

        # the phone only takes counts from the watch; the watch mirrors the phone
        default_mode = "full_replace" if self.role == "watch" else "counts_only"
        self.sync_mode = os.getenv("SYNC_MODE", default_mode).lower()

        self.sync_flush_interval = float(os.getenv("SYNC_FLUSH_INTERVAL", "5"))
        self.sync_http_retries = max(int(os.getenv("SYNC_HTTP_RETRIES", "2")), 1)
        self.sync_http_retry_backoff_ms = max(
            int(os.getenv("SYNC_HTTP_RETRY_BACKOFF_MS", "150")), 0
        )
        self.sync_max_pending = max(int(os.getenv("SYNC_MAX_PENDING", "100")), 1)
        self.heartbeat_interval = max(float(os.getenv("HEARTBEAT_INTERVAL", "30")), 1.0)

        self.max_count = float(os.getenv("MAX_COUNT", "999999"))

    @property
    def db_path(self):
        return os.path.join(self.data_dir, f"{self.device_id}.db")


config = Config()
