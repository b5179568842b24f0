"""Engine configuration via environment variables."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings loaded from .env or environment."""

    DATABASE_URL: str = "sqlite:///./recordtrail.db"
    RECORDTRAIL_ENABLED: bool = True
    TRACK_ASSOCIATIONS: bool = False
    SERIALIZER: str = "json"  # json | yaml
    ACTOR_HEADER: str = "X-Actor-Id"

    class Config:
        env_file = ".env"


settings = Settings()
