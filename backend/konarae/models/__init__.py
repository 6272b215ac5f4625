from .config_models import AppConfig, CrawlerConfig, SourceConfig

__all__ = ["AppConfig", "CrawlerConfig", "SourceConfig"]
