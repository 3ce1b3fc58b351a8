import json
import logging
import os
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

CONFIG_PATH = os.getenv("CONFIG_PATH", "config.json")


class RedisConfig(BaseModel):
    url: str = Field(default="redis://redis:6379", description="Redis connection URL")
    socket_timeout: int = Field(default=5, description="Redis socket timeout in seconds")


class RateLimitConfig(BaseModel):
    enabled: bool = Field(default=True, description="Enable rate limiting")
    max_requests: int = Field(default=5, ge=1, description="Max requests per window")
    window_seconds: int = Field(default=60, ge=1, description="Rate limit window in seconds")


class DownloadConfig(BaseModel):
    max_concurrent: int = Field(default=10, ge=1, le=100, description="Max concurrent downloads (all owners)")
    tier_limits: Dict[str, int] = Field(
        default={"basic": 1, "premium": 5},
        description="Max concurrent downloads per owner, by tier"
    )
    default_tier: str = Field(default="basic", description="Tier used when the owner has none")
    timeout_seconds: int = Field(default=3600, ge=1, description="Wall-clock limit for one extraction")
    info_timeout_seconds: int = Field(default=45, ge=1, description="Wall-clock limit for format resolution")
    socket_timeout: int = Field(default=10, ge=1, description="Socket timeout for yt-dlp")
    retries: int = Field(default=3, ge=0, description="Number of retries for failed downloads")
    temp_dir: str = Field(default="/tmp/ytdlp_downloads", description="Directory for per-job output files")
    chunk_size: int = Field(default=1024 * 1024, ge=1, description="Bytes per chunk sent to the client")
    poll_interval_seconds: float = Field(default=1.0, gt=0, description="Client disconnect poll interval")
    reverify_after_seconds: float = Field(default=300.0, gt=0, description="Re-check token revocation after this long")
    kill_grace_seconds: float = Field(default=5.0, ge=0, description="SIGTERM to SIGKILL grace period")


class TokenConfig(BaseModel):
    ttl_seconds: int = Field(default=1800, ge=1, description="Stream token lifetime")
    single_use: bool = Field(default=False, description="Consume tokens on first download")
    rotate_on_refresh: bool = Field(default=False, description="Issue a new token id on refresh")
    retention_seconds: int = Field(default=86400, ge=0, description="How long expired tokens stay refreshable")


class SecurityConfig(BaseModel):
    enable_ssrf_protection: bool = Field(default=True, description="Enable SSRF protection")
    allow_private_ips: bool = Field(default=False, description="Allow private IP ranges")
    allow_localhost: bool = Field(default=False, description="Allow localhost access")


class YtDlpConfig(BaseModel):
    command: List[str] = Field(default=["yt-dlp"], description="Extractor argument vector prefix")
    js_runtime: Optional[str] = Field(default=None, description="JS runtime path (e.g., deno:/usr/local/bin/deno)")
    enable_live_streams: bool = Field(default=False, description="Allow live stream downloads")
    merge_output_format: str = Field(default="mp4", description="Container for merged video+audio")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field(default="%(message)s", description="Log format")
    enable_rich: bool = Field(default=True, description="Enable rich console logging")

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()


class I18nConfig(BaseModel):
    default_locale: str = Field(default="en", description="Default locale")
    supported_locales: list = Field(default=["en", "ja"], description="Supported locales")


class ApiConfig(BaseModel):
    title: str = Field(default="yt-dlp Secure Streaming API", description="API title")
    description: str = Field(default="Token-gated yt-dlp download proxy", description="API description")
    version: str = Field(default="1.0.0", description="API version")
    cors_origins: list = Field(default=["*"], description="CORS allowed origins")
    debug: bool = Field(default=False, description="Enable debug mode")


class AuthConfig(BaseModel):
    api_key_enabled: bool = Field(default=False, description="Require X-API-Key on client endpoints")
    issue_allowed_origins: list = Field(default=["*"], description="Origins allowed to create API keys")


class Config(BaseSettings):
    """Main configuration model"""
    model_config = SettingsConfigDict(env_prefix="APP_", env_nested_delimiter="__", extra="ignore")

    redis: RedisConfig = Field(default_factory=RedisConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    download: DownloadConfig = Field(default_factory=DownloadConfig)
    tokens: TokenConfig = Field(default_factory=TokenConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    ytdlp: YtDlpConfig = Field(default_factory=YtDlpConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    i18n: I18nConfig = Field(default_factory=I18nConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)

    @classmethod
    def load_from_file(cls, config_path: str = "config.json") -> "Config":
        """Load configuration from JSON file"""
        if os.path.exists(config_path):
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    config_data = json.load(f)
                logger.info(f"Configuration loaded from {config_path}")
                return cls(**config_data)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load config from {config_path}: {str(e)}")
                logger.info("Using default configuration")
        else:
            logger.warning(f"Config file {config_path} not found, using defaults")

        return cls()

    @classmethod
    def load_from_env(cls) -> "Config":
        """
        Load configuration from environment variables.
        Nested ``APP_SECTION__FIELD`` variables are read by pydantic-settings;
        the short names below are kept for compatibility with existing deployments.
        """
        config_data = {}

        if os.getenv("REDIS_URL"):
            config_data["redis"] = {"url": os.getenv("REDIS_URL")}

        rate_limit = {}
        if os.getenv("RATE_LIMIT_REQUESTS"):
            rate_limit["max_requests"] = int(os.getenv("RATE_LIMIT_REQUESTS"))
        if os.getenv("RATE_LIMIT_WINDOW"):
            rate_limit["window_seconds"] = int(os.getenv("RATE_LIMIT_WINDOW"))
        if rate_limit:
            config_data["rate_limit"] = rate_limit

        download = {}
        if os.getenv("MAX_CONCURRENT_DOWNLOADS"):
            download["max_concurrent"] = int(os.getenv("MAX_CONCURRENT_DOWNLOADS"))
        if os.getenv("DOWNLOAD_TIMEOUT"):
            download["timeout_seconds"] = int(os.getenv("DOWNLOAD_TIMEOUT"))
        if os.getenv("DOWNLOAD_TEMP_DIR"):
            download["temp_dir"] = os.getenv("DOWNLOAD_TEMP_DIR")
        if download:
            config_data["download"] = download

        tokens = {}
        if os.getenv("STREAM_TOKEN_TTL"):
            tokens["ttl_seconds"] = int(os.getenv("STREAM_TOKEN_TTL"))
        if os.getenv("STREAM_TOKEN_SINGLE_USE"):
            tokens["single_use"] = os.getenv("STREAM_TOKEN_SINGLE_USE").lower() == "true"
        if tokens:
            config_data["tokens"] = tokens

        if os.getenv("ENABLE_SSRF_PROTECTION"):
            config_data["security"] = {
                "enable_ssrf_protection": os.getenv("ENABLE_SSRF_PROTECTION").lower() == "true"
            }

        if os.getenv("YT_DLP_JS_RUNTIME"):
            config_data["ytdlp"] = {"js_runtime": os.getenv("YT_DLP_JS_RUNTIME")}

        if os.getenv("LOG_LEVEL"):
            config_data["logging"] = {"level": os.getenv("LOG_LEVEL")}

        if os.getenv("DEFAULT_LOCALE"):
            config_data["i18n"] = {"default_locale": os.getenv("DEFAULT_LOCALE")}

        if os.getenv("API_KEY_ENABLED"):
            config_data["auth"] = {"api_key_enabled": os.getenv("API_KEY_ENABLED").lower() == "true"}

        return cls(**config_data)

    def save_to_file(self, config_path: str = "config.json"):
        """Save configuration to JSON file"""
        try:
            with open(config_path, 'w', encoding='utf-8') as f:
                json.dump(self.model_dump(exclude_none=True), f, indent=2, ensure_ascii=False)
            logger.info(f"Configuration saved to {config_path}")
        except OSError as e:
            logger.error(f"Failed to save config to {config_path}: {str(e)}")


def load_config() -> Config:
    """Load configuration with priority: config.json > env vars > defaults"""
    if os.path.exists(CONFIG_PATH):
        return Config.load_from_file(CONFIG_PATH)

    logger.info(f"Config file not found at {CONFIG_PATH}, checking environment variables")
    return Config.load_from_env()


config = load_config()
