"""
Pydantic models for YAML configuration validation.

This module defines the schema for config.yml: the crawl sources the scheduler
runs and extra WAF-protected domains that must be fetched with the browser.

Usage:
    from konarae.models.config_models import AppConfig
    config = AppConfig.from_yaml("config.yml")
"""

import os
import re
from pathlib import Path
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SourceConfig(BaseModel):
    """A crawl target supplied by configuration."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(description="Stable source identifier")
    name: str = Field(description="Display name")
    url: str = Field(description="Listing page URL")
    type: Literal["plain", "browser"] = Field(
        default="plain", description="Fetch adapter: plain HTTP or browser-rendered"
    )
    is_active: bool = Field(default=True, description="Whether the scheduler crawls it")
    wait_for_selector: Optional[str] = Field(
        default=None, description="CSS selector to wait for on browser-rendered pages"
    )
    region: Optional[str] = Field(default=None, description="Default region for listings")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Source URL must be absolute http(s): {v}")
        return v


class CrawlerConfig(BaseModel):
    """Crawler tuning that lives next to the source list."""

    model_config = ConfigDict(extra="forbid")

    waf_domains: List[str] = Field(
        default_factory=list,
        description="Additional hosts that require browser rendering",
    )


class AppConfig(BaseModel):
    """Root configuration model for config.yml."""

    model_config = ConfigDict(extra="ignore")

    sources: List[SourceConfig] = Field(default_factory=list)
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)

    @field_validator("sources")
    @classmethod
    def validate_unique_ids(cls, v: List[SourceConfig]) -> List[SourceConfig]:
        seen = set()
        for source in v:
            if source.id in seen:
                raise ValueError(f"Duplicate source id: {source.id}")
            seen.add(source.id)
        return v

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "AppConfig":
        """
        Parse config.yml, expand ``${VAR}`` references and validate.

        Raises:
            FileNotFoundError: yaml_path does not exist
            ValueError: an env reference is unset or the document is invalid
        """
        import yaml

        path = Path(yaml_path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return cls.model_validate(_expand_env(document))


_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _expand_env(node: Any) -> Any:
    """Substitute ``${VAR}`` inside every string of a parsed YAML tree."""
    if isinstance(node, dict):
        return {key: _expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand_env(item) for item in node]
    if not isinstance(node, str):
        return node

    def substitute(match: "re.Match[str]") -> str:
        value = os.getenv(match.group(1))
        if value is None:
            raise ValueError(f"Environment variable not set: {match.group(1)}")
        return value

    return _ENV_REF.sub(substitute, node)
