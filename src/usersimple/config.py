from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field("sqlite:///users.db", description="SQLAlchemy URL")
    user_table: str = Field("user_simple", description="Table holding the users")
    constrained_schema: bool = Field(True, description="Create PRIMARY KEY/UNIQUE/NOT NULL")
    session_duration_minutes: int = Field(30, gt=0)
    admin_level: int = Field(1, ge=0)
    api_title: str = Field("User Simple API")
    session_cookie_name: str = Field("session")
    login_rate_limit: str = Field("5/minute")
    rate_limit_enabled: bool = Field(True)


settings = Settings()
