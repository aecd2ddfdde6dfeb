"""
Application settings

Values are read from the environment (or a local .env file).
"""

from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_NAME: str = "MetaForge Pipeline Runner"
    SETTING_VERSION: str = "0.1.0"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"

    # Server
    PORT: int = 8080
    CORS_ORIGINS: List[str] = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: List[str] = ["*"]
    CORS_ALLOW_HEADERS: List[str] = ["*"]
    CORS_EXPOSE_HEADERS: List[str] = []

    # Pipeline execution
    USE_MOCKS: bool = False
    DEFAULT_ORIGIN: str = "37.8715,-122.2730"
    DEFAULT_RADIUS_M: int = 800
    DEFAULT_HTTP_TIMEOUT_MS: int = 9000

    # Event stream
    SSE_PING_SECONDS: float = 20.0
    SSE_STREAM_TIMEOUT_SECONDS: float = 600.0

    # Environment variables with these prefixes are visible to header templates ({{env.NAME}})
    SECRET_ENV_PREFIXES: List[str] = ["OVERPASS_", "OSRM_", "OPEN_METEO_", "API_"]


settings = Settings()
