from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")
    linked_sync_enabled: bool = Field(
        default=True,
        validation_alias="KWILT_LINKED_SYNC_ENABLED",
        description="Re-run linked step reconciliation after every mutation that changes an activity's done state",
    )
    propagation_limit: int = Field(
        default=1000,
        validation_alias="KWILT_PROPAGATION_LIMIT",
        description="Maximum parent re-derivations in a single linked step propagation wave",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that log level is one of the standard logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            logger.warning(f"Invalid LOG_LEVEL '{value}'. Valid levels are: {', '.join(sorted(valid_levels))}. Defaulting to INFO.")
            return "INFO"
        return upper_value

    @field_validator("propagation_limit")
    @classmethod
    def validate_propagation_limit(cls, value: int) -> int:
        """Propagation must be allowed at least one re-derivation."""
        if value < 1:
            logger.warning(f"KWILT_PROPAGATION_LIMIT must be >= 1, got {value}. Defaulting to 1000.")
            return 1000
        return value


settings = Settings()
