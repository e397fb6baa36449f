"""Application configuration."""

from os import getenv

from pydantic import BaseModel


class Settings(BaseModel):
    """Runtime settings for the application."""

    app_name: str = "evidence-vault"
    app_env: str = getenv("APP_ENV", "dev")
    debug: bool = getenv("DEBUG", "0") == "1"
    log_level: str = getenv("LOG_LEVEL", "INFO")
    database_url: str = getenv("DATABASE_URL", "sqlite:///./evidence_vault.db")
    app_url: str = getenv("APP_URL", "http://localhost:8000")
    jwt_secret_key: str = getenv("JWT_SECRET_KEY", "dev-only-change-me-to-a-long-random-secret")
    jwt_algorithm: str = getenv("JWT_ALGORITHM", "HS256")
    jwt_expire_minutes: int = int(getenv("JWT_EXPIRE_MINUTES", "60"))
    admin_user: str = getenv("ADMIN_USER", "")
    admin_pass: str = getenv("ADMIN_PASS", "")

    download_secret: str = getenv("DOWNLOAD_SECRET", "dev-download-secret-change-me")
    # Fernet key (urlsafe base64, 32 bytes). Empty disables IP encryption.
    ip_encryption_key: str = getenv("IP_ENCRYPTION_KEY", "")
    redeem_token_salt: str = getenv("REDEEM_TOKEN_SALT", "redeem-default-salt")

    storage_dir: str = getenv("STORAGE_DIR", "./storage")
    # TTF used for buyer-supplied text in evidence PDFs; system fonts are tried otherwise.
    evidence_pdf_font: str = getenv("EVIDENCE_PDF_FONT", "")

    smtp_host: str = getenv("SMTP_HOST", "")
    smtp_port: int = int(getenv("SMTP_PORT", "587"))
    smtp_user: str = getenv("SMTP_USER", "")
    smtp_pass: str = getenv("SMTP_PASS", "")
    from_email: str = getenv("FROM_EMAIL", "noreply@example.com")

    paypal_client_id: str = getenv("PAYPAL_CLIENT_ID", "")
    paypal_client_secret: str = getenv("PAYPAL_CLIENT_SECRET", "")
    paypal_webhook_id: str = getenv("PAYPAL_WEBHOOK_ID", "")
    paypal_mode: str = getenv("PAYPAL_MODE", "sandbox")

    geoip_enabled: bool = getenv("GEOIP_ENABLED", "1") == "1"

    store_name: str = getenv("STORE_NAME", "Digital Store")
    support_email: str = getenv("SUPPORT_EMAIL", "support@example.com")

    checkout_token_ttl_minutes: int = 15
    redeem_token_ttl_minutes: int = 60
    stage_token_ttl_minutes: int = 60
    retention_days: int = 540
    ledger_append_retries: int = 5

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


settings: Settings = Settings()
