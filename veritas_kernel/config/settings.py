from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App settings
    app_name: str = "Veritas Kernel API"
    log_level: str = "INFO"

    # Database
    db_path: str = ":memory:"

    class Config:
        env_prefix = "VERITAS_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
