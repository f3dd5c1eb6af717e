from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    secret_key: str = "dev-secret"
    database_url: str = "sqlite:///./courtbook.db"
    sqlite_busy_timeout: float = 10.0
    cookie_secure: bool = False
    log_level: str = "INFO"

    default_slot_minutes: int = 30
    opening_minute: int = 8 * 60
    closing_minute: int = 23 * 60

    cron_secret: str = ""

    bootstrap_admin_username: str = "admin"
    bootstrap_admin_password: str = "admin123"


settings = Settings()
