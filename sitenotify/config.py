# sitenotify/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Security
    allowed_origins: list[str] = ["*"]
    rate_limit_per_minute: int = 60

    # Batch dispatch
    max_batch_size: int = 50
    default_language: Literal["zh-TW", "zh-CN", "en-US"] = "zh-TW"
    dispatch_concurrency: int = 5  # Hard ceiling on simultaneous outbound channel calls
    dispatch_send_timeout_seconds: float = 30.0
    dispatch_send_interval_seconds: float = 0.0  # Pause between sends of one worker (provider limits)

    # Job retention
    job_retention_seconds: int = 86400  # Terminal jobs are evicted after 24 hours
    job_sweep_interval_seconds: float = 300.0

    # Email channel (SMTP)
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from_address: str | None = None  # Falls back to smtp_user
    smtp_use_ssl: bool | None = None  # Implicit TLS; defaults to True on port 465
    smtp_timeout_seconds: int = 60

    # WhatsApp channel (template messaging HTTP API)
    whatsapp_api_base_url: str = "https://api.ycloud.com/v2"
    whatsapp_api_key: str | None = None
    whatsapp_sender_number: str | None = None  # E.164, e.g. +85212345678
    whatsapp_template_name: str = "worker_qrcode"  # Language suffix (_tw/_cn/_en) is appended
    whatsapp_account_template_name: str = "account_details"

    # Monitoring & Metrics
    enable_metrics: bool = True

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def smtp_enabled(self) -> bool:
        """Check if SMTP credentials are configured"""
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)

    @property
    def whatsapp_enabled(self) -> bool:
        """Check if the WhatsApp template API is configured"""
        return bool(self.whatsapp_api_key and self.whatsapp_sender_number)

    @property
    def smtp_implicit_tls(self) -> bool:
        if self.smtp_use_ssl is None:
            return self.smtp_port == 465
        return self.smtp_use_ssl

    @property
    def smtp_socket_timeout(self) -> float:
        """SMTP socket timeout, never longer than the dispatch send timeout"""
        return min(float(self.smtp_timeout_seconds), self.dispatch_send_timeout_seconds)

    @property
    def email_sender(self) -> str | None:
        return self.smtp_from_address or self.smtp_user


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    # --- Channels ---
    if not s.smtp_enabled:
        warnings.append("SMTP is not configured (email batch jobs will fail pre-flight).")
    if not s.whatsapp_enabled:
        warnings.append("WhatsApp API is not configured (whatsapp batch jobs will fail pre-flight).")

    # --- Dispatch limits ---
    if s.dispatch_concurrency < 1:
        warnings.append("dispatch_concurrency < 1: no batch job will ever be sent.")
    if s.max_batch_size < 1:
        warnings.append("max_batch_size < 1: every batch request will be rejected.")
    if s.dispatch_send_timeout_seconds <= 0:
        warnings.append("dispatch_send_timeout_seconds <= 0: every send will time out.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce sane dispatch limits (hard fail).
    In all envs: warn about missing channel configuration.
    """
    if s.is_production and (s.dispatch_concurrency < 1 or s.max_batch_size < 1):
        raise RuntimeError("Invalid dispatch limits for production: "
                           f"dispatch_concurrency={s.dispatch_concurrency}, "
                           f"max_batch_size={s.max_batch_size}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
