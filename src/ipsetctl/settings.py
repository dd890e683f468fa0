from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def default_config_dir() -> Path:
    base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return base / "ipsetctl"


def config_file_path(config_dir: Path) -> Path:
    return config_dir / "config.yaml"


class FileConfig(BaseModel):
    executable: str = "ipset"
    log_level: LogLevel = "WARNING"
    serialize_refresh: bool = False
    hash_family: Literal["inet", "inet6"] = "inet"
    hash_size: int = 1024
    max_elements: int = 65536

    model_config = ConfigDict(extra="forbid")


class Settings(BaseSettings):
    executable: str = "ipset"
    log_level: LogLevel = "WARNING"
    serialize_refresh: bool = False
    hash_family: Literal["inet", "inet6"] = "inet"
    hash_size: int = 1024
    max_elements: int = 65536
    config_dir: Path = Field(default_factory=default_config_dir)

    model_config = SettingsConfigDict(env_prefix="IPSETCTL_", extra="forbid")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            ConfigFileSource(settings_cls, init_settings, env_settings),
            file_secret_settings,
        )


class ConfigFileSource(PydanticBaseSettingsSource):
    """Reads ``config.yaml`` from whichever config directory wins."""

    def __init__(
        self,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
    ) -> None:
        super().__init__(settings_cls)
        self.init_settings = init_settings
        self.env_settings = env_settings

    def __call__(self) -> dict[str, Any]:
        return self._load()

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any | None, str, bool]:
        data = self._load()
        if field_name in data:
            return data[field_name], field_name, True
        return None, field_name, False

    def _load(self) -> dict[str, Any]:
        init_data = dict(self.init_settings())
        env_data = dict(self.env_settings())

        config_dir_value = init_data.get("config_dir") or env_data.get("config_dir")
        config_dir = Path(config_dir_value) if config_dir_value else default_config_dir()

        data: dict[str, Any] = {"config_dir": config_dir}

        cfg_path = config_file_path(config_dir)
        if cfg_path.exists():
            loaded = yaml.safe_load(cfg_path.read_text()) or {}
            if not isinstance(loaded, dict):
                raise ValueError(f"Config file {cfg_path} must contain a mapping")
            config = FileConfig.model_validate(loaded)
            data.update(config.model_dump(exclude_unset=True))

        return data
