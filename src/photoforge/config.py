import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    database_path: str = "data/photoforge.db"
    db_busy_timeout_sec: float = 30.0
    upload_dir: str = "uploads"

    max_images_per_job: int = 100
    max_image_mb: int = 20

    queue_backend: str = "sqlite"
    queue_url: str = ""
    queue_api_key: str = ""
    dispatch_timeout_sec: int = 10

    reset_concurrency: int = 4
    cron_secret: str = ""

    admin_api_token: str = ""
    jwt_secret: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    session_ttl_hours: int = 24

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"prod", "production"}


settings = Settings()


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
