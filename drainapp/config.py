from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_SLOT: str = "local"
    APP_VERSION: str = "1.0.0"
    PORT: int = 8080
    HOST: str = "0.0.0.0"
    LOG_LEVEL: str = "INFO"
    SLOT_COOKIE: str = "X-Server-Slot"
    MIGRATION_COOKIE: str = "MIGRATION_TYPE"
    MEMORY_LIMIT_MB: int = 1024

    class Config:
        env_prefix = ""
        env_file = ".env"


settings = Settings()
