"""Runtime settings, read from IDLEWATCH_* environment variables."""

from collections.abc import Mapping

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from idlewatch.strategies import STRATEGIES

ENV_PREFIX = "IDLEWATCH_"
SLACK_WEBHOOK_ENV = "IDLEWATCH_SLACK_WEBHOOK"


class Settings(BaseSettings):
    """Engine defaults. CLI options override these per run."""

    lookback_days: int = Field(default=7, ge=1, description="Days of metrics to average")
    ec2_cpu_threshold: float = Field(default=5.0, ge=0)
    rds_connection_threshold: float = Field(default=2.0, ge=0)
    sagemaker_invocation_threshold: float = Field(default=10.0, ge=0)
    strategy: str = Field(default="cpu", description="Idle detection strategy name")
    max_concurrent: int = Field(default=5, ge=1, description="Concurrent metric fetches")
    fetch_timeout: float = Field(default=10.0, gt=0, description="Seconds per CloudWatch call")
    deduplicate: bool = True
    region: str | None = None

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    @field_validator("strategy")
    @classmethod
    def _known_strategy(cls, value: str) -> str:
        name = value.strip().lower()
        if name not in STRATEGIES:
            raise ValueError(f"must be one of {sorted(STRATEGIES)}")
        return name

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from the environment, e.g. IDLEWATCH_LOOKBACK_DAYS=14.

        With `environ`, only that mapping is read. Raises pydantic's
        ValidationError (a ValueError) for values that do not validate.
        """
        if environ is None:
            return cls()
        values = {
            key[len(ENV_PREFIX) :].lower(): value
            for key, value in environ.items()
            if key.upper().startswith(ENV_PREFIX) and value != ""
        }
        return cls.model_validate(values)
