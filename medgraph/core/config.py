# medgraph/core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    NEO4J_URI: str
    NEO4J_USER: str
    NEO4J_PASSWORD: str
    REDIS_URL: str
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.5-flash"
    LIMITER_STORAGE_URI: str = ""
    GCS_PROJECT_ID: str = ""
    STORAGE_BUCKET: str = "patient-files"
    LOG_LEVEL: str = "INFO"
    ALLOWED_ORIGINS: list[str] = [
        "http://localhost:5173",
        "http://localhost:8080",
    ]

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
