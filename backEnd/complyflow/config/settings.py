"""
Application settings with environment variable support.

Configuration is loaded from environment variables with optional .env file.
Azure OpenAI settings override OpenAI for the vision tier when fully configured.
Tier thresholds, polling limits and the stuck-run sweep timeout are operational
knobs, so every one of them can be overridden per deployment.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RULES_PATH = Path(__file__).resolve().parent.parent / "rules" / "default_rules.json"


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Tier 1: Azure Document Intelligence (layout analysis)
    azure_di_endpoint: Optional[str] = Field(
        default=None, alias="AZURE_DOCUMENT_INTELLIGENCE_ENDPOINT"
    )
    azure_di_key: Optional[str] = Field(
        default=None, alias="AZURE_DOCUMENT_INTELLIGENCE_KEY"
    )
    azure_di_api_version: str = Field(
        default="2024-11-30", alias="AZURE_DOCUMENT_INTELLIGENCE_API_VERSION"
    )
    azure_di_model: str = Field(default="prebuilt-layout", alias="AZURE_DOCUMENT_INTELLIGENCE_MODEL")
    poll_max_attempts: int = Field(default=30, ge=1, alias="TIER1_POLL_MAX_ATTEMPTS")
    poll_interval_seconds: float = Field(default=2.0, ge=0.0, alias="TIER1_POLL_INTERVAL_SECONDS")

    # Tier 2: vision model (OpenAI default, Azure OpenAI overrides)
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o", alias="OPENAI_MODEL")
    azure_openai_endpoint: Optional[str] = Field(
        default=None, alias="AZURE_OPENAI_ENDPOINT"
    )
    azure_openai_api_key: Optional[str] = Field(
        default=None, alias="AZURE_OPENAI_API_KEY"
    )
    azure_openai_deployment_name: Optional[str] = Field(
        default=None, alias="AZURE_OPENAI_DEPLOYMENT_NAME"
    )
    azure_openai_api_version: str = Field(
        default="2024-02-15-preview", alias="AZURE_OPENAI_API_VERSION"
    )
    vision_max_pages: int = Field(default=4, ge=1, alias="VISION_MAX_PAGES")
    vision_max_tokens: int = Field(default=4096, ge=1, alias="VISION_MAX_TOKENS")

    # Acceptance thresholds per tier
    tier1_threshold: float = Field(default=0.85, ge=0.0, le=1.0, alias="TIER1_CONFIDENCE_THRESHOLD")
    tier2_threshold: float = Field(default=0.80, ge=0.0, le=1.0, alias="TIER2_CONFIDENCE_THRESHOLD")
    tier3_threshold: float = Field(default=0.70, ge=0.0, le=1.0, alias="TIER3_CONFIDENCE_THRESHOLD")
    tier_timeout_seconds: float = Field(default=90.0, gt=0.0, alias="TIER_TIMEOUT_SECONDS")

    # Cost control (USD)
    # Unset means no per-document ceiling
    max_cost_per_document: Optional[float] = Field(default=None, ge=0.0, alias="MAX_COST_PER_DOCUMENT")
    tier1_cost_per_page: float = Field(default=0.0015, ge=0.0, alias="TIER1_COST_PER_PAGE")
    tier2_cost_per_page: float = Field(default=0.01, ge=0.0, alias="TIER2_COST_PER_PAGE")

    # Housekeeping
    stuck_run_timeout_minutes: int = Field(default=30, ge=1, alias="STUCK_RUN_TIMEOUT_MINUTES")

    # Rate limiting of operator-triggered actions
    rate_limit_requests: int = Field(default=10, ge=1, alias="RATE_LIMIT_REQUESTS")
    rate_limit_window_seconds: int = Field(default=60, ge=1, alias="RATE_LIMIT_WINDOW_SECONDS")

    # Pattern analysis
    pattern_window_days: int = Field(default=30, ge=1, alias="PATTERN_WINDOW_DAYS")
    pattern_min_support: int = Field(default=2, ge=1, alias="PATTERN_MIN_SUPPORT")
    pattern_max_patterns: int = Field(default=50, ge=1, alias="PATTERN_MAX_PATTERNS")
    target_field_accuracy: float = Field(default=0.95, ge=0.0, le=1.0, alias="TARGET_FIELD_ACCURACY")

    # Risk model training
    min_benchmark_score: float = Field(default=80.0, ge=0.0, le=100.0, alias="MIN_BENCHMARK_SCORE")
    min_training_samples: int = Field(default=10, ge=1, alias="MIN_TRAINING_SAMPLES")

    # Rules
    rules_path: str = Field(default=str(DEFAULT_RULES_PATH), alias="COMPLYFLOW_RULES_PATH")
    rules_cache_ttl_seconds: float = Field(default=60.0, ge=0.0, alias="RULES_CACHE_TTL_SECONDS")

    # Persistence
    store_backend: str = Field(default="memory", alias="COMPLYFLOW_STORE")
    google_application_credentials: Optional[str] = Field(
        default=None, alias="GOOGLE_APPLICATION_CREDENTIALS"
    )
    firebase_project_id: Optional[str] = Field(
        default=None, alias="FIREBASE_PROJECT_ID"
    )

    # LangSmith settings
    langchain_api_key: Optional[str] = Field(default=None, alias="LANGCHAIN_API_KEY")
    langchain_project: str = Field(default="complyflow", alias="LANGCHAIN_PROJECT")
    langchain_tracing_v2: bool = Field(default=True, alias="LANGCHAIN_TRACING_V2")

    def is_layout_service_configured(self) -> bool:
        """Check if Azure Document Intelligence credentials are present."""
        return bool(self.azure_di_endpoint and self.azure_di_key)

    def is_azure_openai_configured(self) -> bool:
        """Check if Azure OpenAI is fully configured."""
        return all([
            self.azure_openai_endpoint,
            self.azure_openai_api_key,
            self.azure_openai_deployment_name,
        ])

    def is_vision_configured(self) -> bool:
        """Check if any vision model provider is usable."""
        return self.is_azure_openai_configured() or bool(self.openai_api_key)

    def is_langsmith_configured(self) -> bool:
        """Check if LangSmith is configured."""
        return self.langchain_api_key is not None

    def threshold_for(self, tier: int) -> float:
        """Acceptance threshold for a tier (1, 2 or 3)."""
        thresholds = {
            1: self.tier1_threshold,
            2: self.tier2_threshold,
            3: self.tier3_threshold,
        }
        if tier not in thresholds:
            raise ValueError(f"Unknown tier: {tier}")
        return thresholds[tier]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
