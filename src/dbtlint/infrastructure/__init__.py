"""Infrastructure domain — engine configuration."""

from dbtlint.infrastructure.config import ConfigError, EngineConfig, load_config, parse_config

__all__ = ["ConfigError", "EngineConfig", "load_config", "parse_config"]
