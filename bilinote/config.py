"""
Configuration module for bilinote.

Uses pydantic-settings to load configuration from environment variables and
env files. The same names the deployment already uses (QWEN_API_KEY,
BILIBILI_COOKIE, ...) are accepted as-is; everything else can be tuned with a
BILINOTE_ prefix.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    Values are read from the process environment first, then from
    ``.env.local`` and ``.env`` in the working directory. The extraction core
    never reads these itself: a ``Settings`` instance is handed to
    ``SubtitleExtractor`` / ``BilibiliClient`` explicitly, so tests can build
    one with keyword arguments instead of mutating the environment.

    Environment Variables:
        HOST / PORT / LOG_LEVEL: uvicorn server options
        BILIBILI_COOKIE: Session cookie. Without it AI subtitles are not
            listed by the player endpoint, which only narrows the catalog.
        AI_PROVIDER: "qwen" (default) or "kimi"
        QWEN_API_KEY / QWEN_MODEL: DashScope credentials and model
        KIMI_API_KEY / KIMI_MODEL: Moonshot credentials and model
        SYSTEM_PROMPT / PROMPT_TEMPLATE: Prompt overrides for note generation
        QWEN_MAX_TOKENS: Completion budget for both providers (default: 8000)
        BILINOTE_MAX_RETRIES: Extra extraction attempts (default: 3)
        BILINOTE_MATCH_THRESHOLD / BILINOTE_AI_MATCH_THRESHOLD: Relevance
            thresholds (default: 0.15 / 0.10)
    """

    # ========== Server Configuration ==========

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    log_level: str = Field(default="info", alias="LOG_LEVEL")

    # ========== Bilibili Upstream ==========

    # Passed through verbatim as the Cookie header
    bilibili_cookie: str = Field(default="", alias="BILIBILI_COOKIE")
    bilibili_user_agent: str = DEFAULT_USER_AGENT

    # Applies to every upstream call, metadata fetch included
    request_timeout: float = 10.0

    # ========== Retry Settings ==========

    # 3 retries -> 4 attempts in total
    max_retries: int = 3
    invalid_url_retry_delay: float = 2.0
    # Linear backoff after a rejected transcript: (attempt + 1) * step
    retry_backoff_step: float = 2.0

    # ========== Relevance Validation ==========

    # Empirically tuned; kept configurable rather than re-derived
    min_subtitle_length: int = 50
    max_checked_keywords: int = 20
    match_threshold: float = 0.15
    ai_match_threshold: float = 0.10
    long_subtitle_length: int = 2000
    long_subtitle_min_matches: int = 3

    # ========== Note Generation ==========

    ai_provider: str = Field(default="qwen", alias="AI_PROVIDER")
    qwen_api_key: str = Field(default="", alias="QWEN_API_KEY")
    qwen_model: str = Field(default="qwen-plus", alias="QWEN_MODEL")
    kimi_api_key: str = Field(default="", alias="KIMI_API_KEY")
    kimi_model: str = Field(default="kimi-k2-0905-preview", alias="KIMI_MODEL")
    system_prompt: str = Field(default="", alias="SYSTEM_PROMPT")
    prompt_template: str = Field(default="", alias="PROMPT_TEMPLATE")
    max_tokens: int = Field(default=8000, alias="QWEN_MAX_TOKENS")
    llm_timeout: float = 120.0

    # ========== Security Settings ==========

    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 10
    enable_security_headers: bool = True
    hsts_max_age: int = 31536000

    # ========== Configuration Store ==========

    # File the /api/config endpoint writes to outside production
    env_file_path: str = ".env.local"
    vercel: str = Field(default="", alias="VERCEL")
    environment: str = Field(default="development", alias="ENVIRONMENT")

    model_config = SettingsConfigDict(
        env_prefix="BILINOTE_",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,  # Allow using field names or aliases
    )

    @property
    def is_production(self) -> bool:
        """True when running on Vercel or with ENVIRONMENT=production."""
        return self.vercel == "1" or self.environment.lower() == "production"

    @property
    def active_api_key(self) -> str:
        return self.kimi_api_key if self.ai_provider == "kimi" else self.qwen_api_key


# Global settings instance - loaded at startup with environment variables
settings = Settings()
