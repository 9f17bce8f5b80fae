from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Shared store
    RACESYNC_REDIS_URL: str = "redis://localhost:6379/0"
    RACESYNC_REDIS_RETRIES: int = 3
    RACESYNC_REDIS_SOCKET_TIMEOUT: float = 5.0
    RACESYNC_REDIS_RECONNECT_DELAY: float = 5.0

    # Key lifetimes (seconds)
    RACESYNC_CACHE_EXPIRY_SECONDS: int = 86400
    RACESYNC_TOMBSTONE_EXPIRY_SECONDS: int = 300

    # Security
    RACESYNC_JWT_SECRET: str = ""
    RACESYNC_JWT_ISSUER: str = "ski-race-timer"
    RACESYNC_JWT_EXPIRY_SECONDS: int = 86400

    # Device side
    RACESYNC_LOCAL_DB_URL: str = "sqlite:///./racesync_local.db"
    RACESYNC_API_BASE_URL: str = "http://localhost:8000"
    RACESYNC_FETCH_TIMEOUT: float = 8.0

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
