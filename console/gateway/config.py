"""
Configuration for the FieldVault console.

Uses pydantic-settings for environment variable loading. The durability
core itself is configured through FieldVaultConfig.from_env().
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Console configuration loaded from environment."""

    # Console settings
    host: str = Field(default="0.0.0.0", description="Console bind host")
    port: int = Field(default=8080, description="Console bind port")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    # Run the scheduler loop inside the console process
    run_scheduler: bool = Field(default=False, description="Start the scheduler loop")

    # History listing defaults
    default_history_limit: int = Field(default=20, description="Default items per listing")
    max_history_limit: int = Field(default=200, description="Maximum items per listing")

    model_config = {"env_prefix": "CONSOLE_"}

    @property
    def bind_address(self) -> str:
        return f"{self.host}:{self.port}"
