"""Pool and provider configuration.

Configuration is read from a YAML file with three sections::

    config:
      domain: example.net
      max_tries: 3
      retry_factor: 10
    providers:
      gce:
        project: my-project
        zone: us-west1-b
        network_name: global/networks/default
        dns_zone_resource_name: pool-zone
    pools:
      - name: debian-9
        template: projects/debian-cloud/global/images/family/debian-9
        machine_type: zones/us-west1-b/machineTypes/e2-micro

The file path comes from GCEPOOL_CONFIG; GCEPOOL_PROJECT and GCEPOOL_ZONE
override the provider section.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError

DEFAULT_CONFIG_PATH = "./gcepool.yaml"


class GlobalConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    domain: Optional[str] = None
    max_tries: int = Field(3, ge=1)
    retry_factor: float = Field(10, ge=0)
    task_limit: int = Field(10, ge=1)


class ProviderConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    project: str
    zone: Optional[str] = None
    machine_type: Optional[str] = None
    network_name: Optional[str] = None
    subnetwork_name: Optional[str] = None
    dns_zone_resource_name: Optional[str] = None
    connection_pool_size: Optional[int] = Field(None, ge=1)
    connection_pool_timeout: float = 60


class PoolConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., min_length=1)
    template: Optional[str] = None
    zone: Optional[str] = None
    machine_type: Optional[str] = None
    network_name: Optional[str] = None
    subnetwork_name: Optional[str] = None
    disk_type: Optional[str] = None
    provider: Optional[str] = None


class Settings(BaseModel):
    config: GlobalConfig = Field(default_factory=GlobalConfig)
    providers: Dict[str, ProviderConfig]
    pools: List[PoolConfig] = Field(default_factory=list)

    def provider(self, name: str = "gce") -> ProviderConfig:
        if name not in self.providers:
            raise ConfigError(f"Provider {name} is not configured")
        return self.providers[name]

    def pool(self, pool_name: str, provider_name: str = "gce") -> PoolConfig:
        """The pool named ``pool_name`` among those served by ``provider_name``."""
        for pool in self.pools_for(provider_name):
            if pool.name == pool_name:
                return pool
        raise ConfigError(f"Pool {pool_name} does not exist for the provider {provider_name}")

    def pools_for(self, provider_name: str) -> List[PoolConfig]:
        """Pools served by a provider; pools without a provider go to every provider."""
        return [p for p in self.pools if p.provider in (None, provider_name)]


def parse_settings(data: dict) -> Settings:
    try:
        return Settings.model_validate(data or {})
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load and validate the YAML configuration file.

    Raises ConfigError if the file is missing or invalid.
    """
    config_path = Path(path or os.environ.get("GCEPOOL_CONFIG", DEFAULT_CONFIG_PATH))
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Configuration file {config_path} is not valid YAML: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {config_path} must contain a mapping")

    providers = data.get("providers") or {}
    gce = providers.get("gce") or {}
    providers["gce"] = gce
    data["providers"] = providers
    if os.environ.get("GCEPOOL_PROJECT"):
        gce["project"] = os.environ["GCEPOOL_PROJECT"]
    if os.environ.get("GCEPOOL_ZONE"):
        gce["zone"] = os.environ["GCEPOOL_ZONE"]

    return parse_settings(data)
