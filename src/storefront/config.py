import os
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ORDERS_DB_USER: str      = os.getenv("ORDERS_DB_USER", "")
    ORDERS_DB_PASSWORD: str  = os.getenv("ORDERS_DB_PASSWORD", "")
    ORDERS_DB_NAME: str      = os.getenv("ORDERS_DB_NAME", "")
    ORDERS_DB_HOST: str      = os.getenv("ORDERS_DB_HOST", "")
    ORDERS_DB_PORT: int      = int(os.getenv("ORDERS_DB_PORT", "5432"))
    # full SQLAlchemy URL, wins over the ORDERS_DB_* parts
    DATABASE_URL: str        = ""
    DB_ECHO: bool            = False
    DB_CONNECT_TIMEOUT: float = 10.0

    # "strict": durable store mandatory, backoff reconnects
    # "permissive": in-memory fallback while the database is away
    STORE_MODE: str          = "strict"
    RECONNECT_BASE_DELAY: float  = 5.0
    RECONNECT_MAX_ATTEMPTS: int  = 5
    HEALTH_CHECK_INTERVAL: float = 60.0

    PAYMENT_POLL_ATTEMPTS: int   = 3
    PAYMENT_POLL_DELAY: float    = 1.0
    PAYMENT_CLIENT_ID: str       = ""
    PAYMENT_WEBHOOK_SECRET: str  = ""

    CATALOG_BASE_URL: str    = ""
    CATALOG_TIMEOUT: float   = 5.0

    RABBIT_USER: str         = os.getenv("RABBIT_USER", "")
    RABBIT_PASSWORD: str     = os.getenv("RABBIT_PASSWORD", "")
    RABBIT_HOST: str         = os.getenv("RABBIT_HOST", "")
    RABBIT_PORT: int         = int(os.getenv("RABBIT_PORT", "5672"))

    OUTBOX_POLL_INTERVAL: int = int(os.getenv("OUTBOX_POLL_INTERVAL", "1"))
    OUTBOX_BATCH_SIZE: int    = 100

    ADMIN_EMAIL: str         = ""
    ADMIN_PASSWORD: str      = ""

    @property
    def strict(self) -> bool:
        return self.STORE_MODE.lower() != "permissive"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://"
            f"{self.ORDERS_DB_USER}:"
            f"{self.ORDERS_DB_PASSWORD}"
            f"@{self.ORDERS_DB_HOST}:"
            f"{self.ORDERS_DB_PORT}/"
            f"{self.ORDERS_DB_NAME}"
        )

    @property
    def rabbit_url(self) -> str | None:
        if not self.RABBIT_HOST:
            return None
        return f"amqp://{self.RABBIT_USER}:{self.RABBIT_PASSWORD}@{self.RABBIT_HOST}:{self.RABBIT_PORT}/"
