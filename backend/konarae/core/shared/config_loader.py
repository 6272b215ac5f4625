"""
Crawl source registry backed by config.yml.

The file lists the portals to crawl plus any WAF-protected domains beyond the
built-in table. ``${VAR}`` references are expanded from the environment and
the result is validated by ``konarae.models.config_models.AppConfig``.

Usage:
    from konarae.core.shared.config_loader import config_loader

    for source in config_loader.get_sources():
        ...
"""

import logging
from pathlib import Path
from typing import List, Optional

from konarae.config import settings
from konarae.models.config_models import AppConfig, SourceConfig

logger = logging.getLogger("konarae.config_loader")


def _locate_config() -> str:
    """First existing config.yml among the repo root, the container mount and cwd."""
    repo_root = Path(__file__).resolve().parents[4]
    candidates = [repo_root / "config.yml", Path("/app/config.yml"), Path.cwd() / "config.yml"]
    found = next((c for c in candidates if c.exists()), candidates[0])
    return str(found)


class ConfigLoader:
    """
    Lazily parses config.yml once and serves the cached result.

    Without a config file the crawler simply has no sources; callers get an
    empty list rather than an error.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or settings.config_path or _locate_config()
        self._config: Optional[AppConfig] = None

    def load(self) -> AppConfig:
        """
        Parse and validate the file, replacing the cached copy.

        Raises:
            FileNotFoundError: config file is absent
            ValueError: YAML, env expansion or source validation failed
        """
        self._config = None
        try:
            config = AppConfig.from_yaml(self.config_path)
        except FileNotFoundError:
            logger.warning(f"No source registry at {self.config_path}")
            raise
        except Exception as e:
            logger.error(f"Invalid source registry {self.config_path}: {e}")
            raise ValueError(f"Configuration error: {e}") from e

        active = sum(1 for s in config.sources if s.is_active)
        logger.info(f"Loaded {len(config.sources)} crawl sources ({active} active) from {self.config_path}")
        self._config = config
        return config

    def reload(self) -> AppConfig:
        return self.load()

    def get_config(self) -> Optional[AppConfig]:
        if self._config is not None:
            return self._config
        try:
            return self.load()
        except FileNotFoundError:
            return None

    def get_sources(self) -> List[SourceConfig]:
        config = self.get_config()
        return list(config.sources) if config else []

    def get_waf_domains(self) -> List[str]:
        config = self.get_config()
        return list(config.crawler.waf_domains) if config else []


config_loader = ConfigLoader()
