"""Settings via pydantic-settings with ASSISTANT_ env prefix.

Anthropic credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) the SDKs use, so one
.env file works for every tool on the machine.
"""

from dataclasses import dataclass

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class SafetyLimits:
    """Caps that bound worst-case cost and stop runaway tool loops."""

    max_iterations: int = 10
    hard_token_limit: int = 200_000
    summarization_threshold: int = 150_000
    max_tokens_per_request: int = 4096

    def __post_init__(self) -> None:
        for name in ("max_iterations", "hard_token_limit", "summarization_threshold", "max_tokens_per_request"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.summarization_threshold > self.hard_token_limit:
            raise ValueError(
                f"summarization_threshold ({self.summarization_threshold}) must be <= "
                f"hard_token_limit ({self.hard_token_limit})"
            )


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ASSISTANT_", env_file=".env")

    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-3-5-haiku-20241022"
    max_tokens: int = 4096  # per-response cap

    # Safety limits
    max_iterations: int = 10
    hard_token_limit: int = 200_000
    summarization_threshold: int = 150_000

    # Context management (None disables summarization entirely)
    max_conversation_tokens: int | None = None
    keep_recent_messages: int = 20
    summary_max_tokens: int = 1024

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    data_dir: str = "data"
    log_level: str = "info"

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        for name in ("max_tokens", "max_iterations", "hard_token_limit", "summarization_threshold"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.keep_recent_messages < 1:
            raise ValueError("keep_recent_messages must be >= 1")
        if self.summarization_threshold > self.hard_token_limit:
            raise ValueError(
                f"summarization_threshold ({self.summarization_threshold}) must be <= "
                f"hard_token_limit ({self.hard_token_limit})"
            )
        return self

    @property
    def safety_limits(self) -> SafetyLimits:
        return SafetyLimits(
            max_iterations=self.max_iterations,
            hard_token_limit=self.hard_token_limit,
            summarization_threshold=self.summarization_threshold,
            max_tokens_per_request=self.max_tokens,
        )
