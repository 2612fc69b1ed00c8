from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./dmarcwatch.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10

    # Application
    app_name: str = "DMARC Watch"
    debug: bool = False
    log_level: str = "INFO"

    # Logging
    log_dir: str = ""  # Empty disables file logging
    log_json: bool = False  # Enable JSON logging for production
    enable_request_logging: bool = True

    # SPF resolution
    spf_max_dns_lookups: int = 10  # RFC 7208 section 4.6.4
    spf_max_depth: int = 5
    dns_timeout: float = 5.0
    dns_lifetime: float = 10.0
    dns_nameservers: list[str] = []  # Empty uses the system resolver

    # Mailbox ingestion
    sync_batch_size: int = 3  # Messages fetched concurrently per group
    sync_max_messages: int = 2000  # Safety cap per sync run
    email_host: str = ""
    email_port: int = 993
    email_user: str = ""
    email_password: str = ""
    email_folder: str = "INBOX"
    email_use_ssl: bool = True
    email_processed_folder: str = ""  # Move processed messages here if set

    # AI recommendations
    ai_daily_limit: int = 100  # Generations per organization per UTC day
    ai_cache_ttl_hours: int = 24
    ai_cooldown_minutes: int = 5  # Per-domain minimum interval
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-2.0-flash"
    gemini_timeout: float = 30.0
    gemini_temperature: float = 0.3
    gemini_max_output_tokens: int = 1024

    # Celery (externally triggered jobs)
    celery_broker_url: str = "redis://redis:6379/1"
    celery_result_backend: str = ""  # Will be set to database_url + sqlalchemy prefix
    celery_task_time_limit: int = 1800  # 30 minutes hard limit

    @field_validator('dns_nameservers', mode='before')
    @classmethod
    def parse_nameservers(cls, v):
        """Parse comma-separated nameservers from environment variable"""
        if isinstance(v, str):
            return [ns.strip() for ns in v.split(',') if ns.strip()]
        return v or []

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
