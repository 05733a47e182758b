"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Constructor arguments
  2. Environment variables  (WAYMARK__SERVER__PORT=9000)
  3. waymark.yaml           (searched in cwd, then platform config dir)
  4. Hardcoded defaults

The config file is optional; every field has a default. Plugins are
code, not configuration, so they are passed to the Application directly.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

Mode = Literal["development", "production"]


def _find_config_file() -> str | None:
    """Return the path of the first waymark.yaml found, or None."""
    candidates = [
        Path("waymark.yaml"),
        Path(platformdirs.user_config_dir("waymark")) / "waymark.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ServerSettings(BaseModel):
    host: str = "localhost"
    port: int = 3000
    # Error responses carry messages and stack traces only in development.
    development: bool = False


class BuildSettings(BaseModel):
    target: Literal["node", "bun", "cloudflare", "deno"] = "node"
    out_dir: str = ".waymark"
    minify: bool = True
    sourcemap: bool = True


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: WAYMARK__SERVER__PORT=9000
        env_prefix="WAYMARK__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    build: BuildSettings = BuildSettings()
    logging: LoggingSettings = LoggingSettings()
    base_path: str = ""
    routes_dir: str = "app/routes"

    @property
    def mode(self) -> Mode:
        return "development" if self.server.development else "production"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
