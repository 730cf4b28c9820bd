import os
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    redis_socket_timeout: float = float(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))
    redis_connect_timeout: float = float(os.getenv("REDIS_CONNECT_TIMEOUT", "5"))

    database_url: Optional[str] = os.getenv("DATABASE_URL")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "joybundles")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))
    db_connect_timeout: int = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))
    db_pool_timeout: int = int(os.getenv("DB_POOL_TIMEOUT", "10"))

    api_prefix: str = os.getenv("API_PREFIX", "")
    frontend_url: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    payment_provider: str = os.getenv("PAYMENT_PROVIDER", "paystack")
    payment_secret_key: str = os.getenv("PAYMENT_SECRET_KEY", "")
    payment_api_base: str = os.getenv("PAYMENT_API_BASE", "https://api.paystack.co")
    payment_currency: str = os.getenv("PAYMENT_CURRENCY", "GHS")
    payment_http_timeout: float = float(os.getenv("PAYMENT_HTTP_TIMEOUT", "10"))

    queue_prefix: str = os.getenv("QUEUE_PREFIX", "bull")
    payment_queue_name: str = os.getenv("PAYMENT_QUEUE_NAME", "payment-processing")
    notification_queue_name: str = os.getenv("NOTIFICATION_QUEUE_NAME", "notifications")
    payment_job_attempts: int = int(os.getenv("PAYMENT_JOB_ATTEMPTS", "5"))
    payment_job_backoff_ms: int = int(os.getenv("PAYMENT_JOB_BACKOFF_MS", "5000"))
    payment_job_backoff_type: str = os.getenv("PAYMENT_JOB_BACKOFF_TYPE", "fixed")
    notification_job_attempts: int = int(os.getenv("NOTIFICATION_JOB_ATTEMPTS", "3"))
    notification_job_backoff_ms: int = int(os.getenv("NOTIFICATION_JOB_BACKOFF_MS", "10000"))
    queue_lock_duration_ms: int = int(os.getenv("QUEUE_LOCK_DURATION_MS", "30000"))

    worker_concurrency: int = int(os.getenv("WORKER_CONCURRENCY", "2"))
    worker_poll_timeout: float = float(os.getenv("WORKER_POLL_TIMEOUT", "1.0"))
    outbox_poll_interval: float = float(os.getenv("OUTBOX_POLL_INTERVAL", "0.5"))
    outbox_batch_size: int = int(os.getenv("OUTBOX_BATCH_SIZE", "50"))

    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@joybundles.com")
    notification_webhook_url: Optional[str] = os.getenv("NOTIFICATION_WEBHOOK_URL")

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+mysqlconnector://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"
        )

settings = Settings()
