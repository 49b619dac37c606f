from __future__ import annotations

import os
import tomllib
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, model_validator


class CacheBackend(StrEnum):
    """Supported cache store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class CacheConfig(BaseModel):
    """Cache store configuration."""

    backend: CacheBackend = Field(default=CacheBackend.SQLITE)
    path: Path = Field(default=Path(".cache/label-mirror.sqlite"))

    # Staleness thresholds per TTL class (seconds)
    short_ttl_s: int = Field(default=3600, ge=0)  # 1 hour
    medium_ttl_s: int = Field(default=86400, ge=0)  # 24 hours
    long_ttl_s: int = Field(default=604800, ge=0)  # 7 days


class UpstreamConfig(BaseModel):
    """Upstream metadata provider configuration."""

    base_url: str = Field(default="https://api.builditrecords.com/v1")
    api_key: str | None = Field(default=None)

    # Request timeouts (seconds)
    entity_timeout_s: float = Field(default=10.0, gt=0)
    listing_timeout_s: float = Field(default=30.0, gt=0)

    # Token bucket
    rate_limit_per_sec: float = Field(default=2.0, ge=0)
    burst: float = Field(default=4.0, ge=1)

    # 429 handling
    default_retry_after_s: float = Field(default=3.0, ge=0)
    max_backoff_s: float = Field(default=30.0, ge=0)


class PaginationConfig(BaseModel):
    """Paginated listing drain configuration."""

    page_size: int = Field(default=50, ge=1)  # small pages avoid upstream timeouts
    max_pages: int = Field(default=20, ge=1)


class LabelDefinitionConfig(BaseModel):
    """One label as declared in configuration."""

    id: str
    slug: str
    name: str
    aliases: list[str] = Field(default_factory=list)


def _default_labels() -> list[LabelDefinitionConfig]:
    return [
        LabelDefinitionConfig(
            id="1",
            slug="buildit-records",
            name="Build It Records",
            aliases=["buildit-records", "builditrecords", "records"],
        ),
        LabelDefinitionConfig(
            id="2",
            slug="buildit-deep",
            name="Build It Deep",
            aliases=["buildit-deep", "builditdeep", "deep"],
        ),
        LabelDefinitionConfig(
            id="3",
            slug="buildit-tech",
            name="Build It Tech",
            aliases=["buildit-tech", "buildittech", "tech"],
        ),
    ]


class LabelsConfig(BaseModel):
    """Label table seed and default-label policy."""

    definitions: list[LabelDefinitionConfig] = Field(default_factory=_default_labels)
    default_label_id: str = Field(default="1")

    @model_validator(mode="after")
    def _check_default_label(self) -> LabelsConfig:
        ids = [label.id for label in self.definitions]
        if len(ids) != len(set(ids)):
            raise ValueError("label ids must be unique")
        if self.default_label_id not in ids:
            raise ValueError(f"default_label_id {self.default_label_id!r} is not a declared label")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="WARNING")  # DEBUG, INFO, WARNING, ERROR
    format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    redact: bool = Field(default=True)
    plain: bool = Field(default=False)  # plain stream handler using `format` instead of Rich


class Config(BaseModel):
    """
    Main configuration for label-mirror.

    Loads from TOML file with optional environment variable overrides.
    """

    cache: CacheConfig = Field(default_factory=CacheConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    labels: LabelsConfig = Field(default_factory=LabelsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: Path | None = None) -> Config:
        """
        Load configuration from TOML file with environment variable overrides.

        Environment variables take precedence and follow the pattern:
        LABEL_MIRROR_<SECTION>_<KEY> (e.g., LABEL_MIRROR_CACHE_LONG_TTL_S)

        All values are gathered into a single dictionary first, then validated
        by Pydantic to ensure consistent type checking and coercion.
        """
        config_dict: dict[str, object] = {}

        if config_path and config_path.exists():
            config_dict = tomllib.loads(config_path.read_text())

        config_dict = cls._merge_env_overrides(config_dict)
        return cls.model_validate(config_dict)

    @staticmethod
    def _section(config_dict: dict[str, object], name: str) -> dict[str, object]:
        section = config_dict.setdefault(name, {})
        if not isinstance(section, dict):
            section = {}
            config_dict[name] = section
        return section

    @classmethod
    def _merge_env_overrides(cls, config_dict: dict[str, object]) -> dict[str, object]:
        """
        Merge environment variable overrides into config dictionary.

        Returns the dictionary with env vars applied, ready for Pydantic validation.
        """
        env_prefix = "LABEL_MIRROR_"

        cache = cls._section(config_dict, "cache")
        if backend := os.getenv(f"{env_prefix}CACHE_BACKEND"):
            cache["backend"] = backend.lower()
        if cache_path := os.getenv(f"{env_prefix}CACHE_PATH"):
            cache["path"] = cache_path
        if short_ttl := os.getenv(f"{env_prefix}CACHE_SHORT_TTL_S"):
            cache["short_ttl_s"] = short_ttl
        if medium_ttl := os.getenv(f"{env_prefix}CACHE_MEDIUM_TTL_S"):
            cache["medium_ttl_s"] = medium_ttl
        if long_ttl := os.getenv(f"{env_prefix}CACHE_LONG_TTL_S"):
            cache["long_ttl_s"] = long_ttl

        upstream = cls._section(config_dict, "upstream")
        if base_url := os.getenv(f"{env_prefix}UPSTREAM_BASE_URL"):
            upstream["base_url"] = base_url
        # Credential: short name first, sectioned name wins
        if api_key := os.getenv(f"{env_prefix}API_KEY"):
            upstream["api_key"] = api_key
        if api_key := os.getenv(f"{env_prefix}UPSTREAM_API_KEY"):
            upstream["api_key"] = api_key
        if entity_timeout := os.getenv(f"{env_prefix}UPSTREAM_ENTITY_TIMEOUT_S"):
            upstream["entity_timeout_s"] = entity_timeout
        if listing_timeout := os.getenv(f"{env_prefix}UPSTREAM_LISTING_TIMEOUT_S"):
            upstream["listing_timeout_s"] = listing_timeout
        if rate := os.getenv(f"{env_prefix}UPSTREAM_RATE_LIMIT_PER_SEC"):
            upstream["rate_limit_per_sec"] = rate
        if burst := os.getenv(f"{env_prefix}UPSTREAM_BURST"):
            upstream["burst"] = burst
        if retry_after := os.getenv(f"{env_prefix}UPSTREAM_DEFAULT_RETRY_AFTER_S"):
            upstream["default_retry_after_s"] = retry_after
        if max_backoff := os.getenv(f"{env_prefix}UPSTREAM_MAX_BACKOFF_S"):
            upstream["max_backoff_s"] = max_backoff

        pagination = cls._section(config_dict, "pagination")
        if page_size := os.getenv(f"{env_prefix}PAGINATION_PAGE_SIZE"):
            pagination["page_size"] = page_size
        if max_pages := os.getenv(f"{env_prefix}PAGINATION_MAX_PAGES"):
            pagination["max_pages"] = max_pages

        labels = cls._section(config_dict, "labels")
        if default_label := os.getenv(f"{env_prefix}LABELS_DEFAULT_LABEL_ID"):
            labels["default_label_id"] = default_label

        logging_config = cls._section(config_dict, "logging")
        if log_level := os.getenv(f"{env_prefix}LOGGING_LEVEL"):
            logging_config["level"] = log_level
        if log_format := os.getenv(f"{env_prefix}LOGGING_FORMAT"):
            logging_config["format"] = log_format
        if log_redact := os.getenv(f"{env_prefix}LOGGING_REDACT"):
            logging_config["redact"] = log_redact.lower() in ("true", "1", "yes")
        if log_plain := os.getenv(f"{env_prefix}LOGGING_PLAIN"):
            logging_config["plain"] = log_plain.lower() in ("true", "1", "yes")

        return config_dict


## Tests


def test_config_defaults():
    config = Config()
    assert config.cache.backend == CacheBackend.SQLITE
    assert config.cache.short_ttl_s == 3600
    assert config.cache.medium_ttl_s == 86400
    assert config.cache.long_ttl_s == 604800
    assert config.pagination.page_size == 50
    assert config.pagination.max_pages == 20
    assert config.upstream.default_retry_after_s == 3.0
    assert config.labels.default_label_id == "1"


def test_config_from_dict():
    config = Config.model_validate(
        {
            "cache": {"backend": "memory", "long_ttl_s": 60},
            "pagination": {"page_size": 10},
        }
    )
    assert config.cache.backend == CacheBackend.MEMORY
    assert config.cache.long_ttl_s == 60
    assert config.pagination.page_size == 10


def test_config_env_overrides(
    monkeypatch,  # pyright: ignore[reportMissingParameterType,reportUnknownParameterType]
):
    monkeypatch.setenv("LABEL_MIRROR_CACHE_BACKEND", "MEMORY")  # pyright: ignore[reportUnknownMemberType]
    monkeypatch.setenv("LABEL_MIRROR_PAGINATION_MAX_PAGES", "5")  # pyright: ignore[reportUnknownMemberType]
    monkeypatch.setenv("LABEL_MIRROR_API_KEY", "sk-test")  # pyright: ignore[reportUnknownMemberType]

    config = Config.load()
    assert config.cache.backend == CacheBackend.MEMORY
    assert config.pagination.max_pages == 5
    assert config.upstream.api_key == "sk-test"


def test_config_load_nonexistent_file():
    config = Config.load(Path("/nonexistent/config.toml"))
    assert config.pagination.page_size == 50


def test_config_rejects_unknown_default_label():
    import pytest
    from pydantic import ValidationError

    with pytest.raises(ValidationError):
        Config.model_validate({"labels": {"default_label_id": "99"}})
