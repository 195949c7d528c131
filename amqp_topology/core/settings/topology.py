"""Settings for the local topology config provider."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .yaml_sources import create_topology_yaml_source


class TopologySettings(BaseSettings):
    """Identity of this process and location of its topology description.

    Environment variables use TOPOLOGY_ prefix.
    Example: TOPOLOGY_INSTANCE_ID=billing-service, TOPOLOGY_CONFIG_FILE=conf/instances.yaml
    """

    instance_id: str | None = Field(
        default=None,
        description="Identifier of the running instance; overrides the value in config_file.",
    )
    config_file: Path = Field(
        default=Path("conf/instances.yaml"),
        description="YAML/JSON document with instances, connections and operators.",
    )

    model_config = SettingsConfigDict(
        env_prefix="TOPOLOGY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize settings source precedence: init > yaml > env > dotenv > secrets."""
        return (
            init_settings,
            create_topology_yaml_source(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )
