from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    env: str = "dev"

    # Storage roots
    upload_dir: str = "/tmp/logshare/logs"
    files_dir: str = "/tmp/logshare/files"
    metadata_file: str = "/tmp/logshare/logs-metadata.json"

    # Upload limits
    max_file_size: int = 5 * 1024 * 1024
    preview_lines: int = 10

    # Secrets (generated per process when absent)
    antibot_secret: str | None = Field(default=None)
    auth_secret: str | None = Field(default=None)
    logshare_secret_arn: str | None = Field(default=None)

    # Challenge behavior
    challenge_validity_seconds: int = 300
    clock_skew_seconds: int = 60
    min_submit_seconds: float = 2.0

    # Rate limiting
    rate_limit_default: str = "500 per minute"
    rate_limit_sweep_seconds: float = 60.0

    allowed_origins: str = ""

    model_config = SettingsConfigDict(case_sensitive=False)


def get_settings() -> Settings:
    return Settings()
