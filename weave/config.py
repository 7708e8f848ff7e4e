"""Configuration management for the Weave graph core"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError
from .state_paths import resolve_db_path, resolve_state_dir

SUPPORTED_PROVIDERS = ("openai", "anthropic")

DEFAULT_MODELS = {
    "openai": "llama31-8b-instruct",
    "anthropic": "claude-3-5-haiku-20241022",
}

DEFAULT_API_URLS = {
    "openai": "http://localhost:8000",
    "anthropic": "https://api.anthropic.com",
}


@dataclass
class WeaveConfig:
    """Configuration for the Weave pipeline"""

    # Storage
    state_dir: Path
    db_path: Path

    # Text-understanding provider
    llm_provider: str = "openai"
    llm_api_url: str = DEFAULT_API_URLS["openai"]
    llm_model: str = DEFAULT_MODELS["openai"]
    llm_api_key: Optional[str] = None
    llm_timeout: float = 60.0
    llm_max_retries: int = 0
    llm_max_tokens: int = 2048

    # Build pipeline
    inter_call_delay: float = 0.5
    build_window: int = 100
    batch_size: int = 10
    top_n: int = 10

    # User context
    user_name: Optional[str] = None
    user_emails: list[str] = field(default_factory=list)

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "WeaveConfig":
        """Load configuration from environment variables"""

        def parse_int(value: Optional[str], default: int) -> int:
            if value is None or not value.strip():
                return default
            try:
                return int(value)
            except ValueError:
                raise ConfigurationError(f"Expected an integer, got {value!r}")

        def parse_float(value: Optional[str], default: float) -> float:
            if value is None or not value.strip():
                return default
            try:
                return float(value)
            except ValueError:
                raise ConfigurationError(f"Expected a number, got {value!r}")

        def parse_list(value: Optional[str]) -> list[str]:
            if not value:
                return []
            return [item.strip().lower() for item in value.split(",") if item.strip()]

        provider = os.getenv("WEAVE_LLM_PROVIDER", "openai").strip().lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(
                f"Unsupported WEAVE_LLM_PROVIDER {provider!r} "
                f"(expected one of {', '.join(SUPPORTED_PROVIDERS)})"
            )

        api_key = os.getenv("WEAVE_LLM_API_KEY") or os.getenv("LLM_API_KEY")
        if provider == "anthropic":
            api_key = api_key or os.getenv("ANTHROPIC_API_KEY")

        state_dir = resolve_state_dir()
        db_override = os.getenv("WEAVE_DB_PATH")
        db_path = resolve_db_path() if db_override else state_dir / "weave.sqlite"

        config = cls(
            state_dir=state_dir,
            db_path=db_path,
            llm_provider=provider,
            llm_api_url=(
                os.getenv("WEAVE_LLM_API_URL") or os.getenv("LLM_API_URL")
                or DEFAULT_API_URLS[provider]
            ).rstrip("/"),
            llm_model=(
                os.getenv("WEAVE_LLM_MODEL") or os.getenv("LLM_MODEL")
                or DEFAULT_MODELS[provider]
            ),
            llm_api_key=api_key or None,
            llm_timeout=parse_float(os.getenv("WEAVE_LLM_TIMEOUT"), 60.0),
            llm_max_retries=parse_int(os.getenv("WEAVE_LLM_MAX_RETRIES"), 0),
            llm_max_tokens=parse_int(os.getenv("WEAVE_LLM_MAX_TOKENS"), 2048),
            inter_call_delay=parse_float(os.getenv("WEAVE_INTER_CALL_DELAY"), 0.5),
            build_window=parse_int(os.getenv("WEAVE_BUILD_WINDOW"), 100),
            batch_size=parse_int(os.getenv("WEAVE_BATCH_SIZE"), 10),
            top_n=parse_int(os.getenv("WEAVE_TOP_N"), 10),
            user_name=os.getenv("WEAVE_USER_NAME") or None,
            user_emails=parse_list(os.getenv("WEAVE_USER_EMAILS")),
            log_level=os.getenv("WEAVE_LOG_LEVEL", os.getenv("LOG_LEVEL", "INFO")).upper(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Reject values the pipeline cannot run with."""
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.build_window < 1:
            raise ConfigurationError(f"build_window must be >= 1, got {self.build_window}")
        if self.inter_call_delay < 0:
            raise ConfigurationError(
                f"inter_call_delay must be >= 0, got {self.inter_call_delay}"
            )
        if self.llm_max_retries < 0:
            raise ConfigurationError(
                f"llm_max_retries must be >= 0, got {self.llm_max_retries}"
            )

    @property
    def has_llm_credentials(self) -> bool:
        """Whether the configured provider can be called at all.

        Local OpenAI-compatible servers (vLLM, Ollama) run without a key;
        the Anthropic API never does.
        """
        if self.llm_provider == "anthropic":
            return bool(self.llm_api_key)
        return bool(self.llm_api_url)
