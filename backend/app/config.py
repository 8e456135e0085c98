"""Application configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://leadgen:leadgen123@db:5432/leadgen"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # Security
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    ADMIN_ROLE: str = "admin"

    # Deduplication working-set caps
    DEDUPE_CROSS_BATCH_LIMIT: int = 500  # Existing leads pulled in next to an explicit batch
    DEDUPE_FULL_SWEEP_LIMIT: int = 1000  # Leads considered by a full-store sweep

    # Merge serialization
    DEDUPE_MERGE_LOCK_ENABLED: bool = True
    DEDUPE_MERGE_LOCK_TTL_SECONDS: int = 60

    # Duplicate review listing
    DUPLICATES_PAGE_SIZE_MAX: int = 100

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
