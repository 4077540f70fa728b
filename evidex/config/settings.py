"""
Evidex Configuration Module

Handles loading and validation of application configuration.
"""

from pathlib import Path
from typing import Optional
from functools import lru_cache

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """Server configuration settings."""
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    workers: int = 1  # active runs and progress are held in-process


class DatabaseConfig(BaseModel):
    """Database configuration settings."""
    path: str = "data/evidex.db"
    echo: bool = False


class StorageConfig(BaseModel):
    """Evidence storage configuration."""
    uploads_path: str = "data/uploads"
    analyses_path: str = "data/analyses"


class ParserConfig(BaseModel):
    """Parser configuration."""
    max_line_length: int = 65536


class RulesConfig(BaseModel):
    """Detection rule configuration."""
    rules_path: str = "rules/pattern_rules"


class MitreConfig(BaseModel):
    """MITRE ATT&CK reference data configuration."""
    attack_json_path: str = "rules/mitre_mapping/attack.json"


class AnalysisConfig(BaseModel):
    """Default analysis pipeline options."""
    map_to_mitre: bool = True
    generate_timeline: bool = True
    max_events: int = 100000
    timeout_seconds: float = 1800.0
    notify_timeout_seconds: float = 5.0
    progress_history: int = 500  # analyses whose progress messages are kept


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file_path: str = "logs/evidex.log"


class Settings(BaseSettings):
    """
    Main application settings.

    Loads configuration from config.yml file, with environment variable overrides.
    """
    model_config = SettingsConfigDict(env_prefix="EVIDEX_", env_nested_delimiter="__")

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    parsers: ParserConfig = Field(default_factory=ParserConfig)
    rules: RulesConfig = Field(default_factory=RulesConfig)
    mitre: MitreConfig = Field(default_factory=MitreConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Base path for relative paths
    base_path: Path = Field(default_factory=lambda: Path.cwd())

    def resolve_path(self, path: str) -> Path:
        """Resolve a relative path against the base path."""
        p = Path(path)
        if p.is_absolute():
            return p
        return self.base_path / p


def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to 'config.yml' in current directory.

    Returns:
        Settings object with loaded configuration.
    """
    if config_path is None:
        config_path = "config.yml"

    config_file = Path(config_path)

    if config_file.exists():
        with open(config_file, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        config_data = {}

    # Set base path to config file's parent directory
    config_data["base_path"] = config_file.parent.resolve()

    return Settings(**config_data)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    This is the primary way to access settings throughout the application.
    """
    return load_config()
