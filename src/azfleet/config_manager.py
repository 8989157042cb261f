"""Configuration management module.

Loads scale set connection settings from a TOML file or from ARM_*
environment variables, and writes them back with secure permissions.

Security:
- Config file permissions: 0600 (owner read/write only)
- Client secret is never written to disk or logged
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli
import tomlkit
from azure.identity import AzureAuthorityHosts

from azfleet.cache.background_refresh import DEFAULT_REFRESH_INTERVAL
from azfleet.models import FleetDescriptor

logger = logging.getLogger(__name__)

# cloud name -> (resource manager endpoint, authority host)
CLOUD_ENDPOINTS: dict[str, tuple[str, str]] = {
    "AzurePublicCloud": ("https://management.azure.com", AzureAuthorityHosts.AZURE_PUBLIC_CLOUD),
    "AzureChinaCloud": ("https://management.chinacloudapi.cn", AzureAuthorityHosts.AZURE_CHINA),
    "AzureUSGovernmentCloud": (
        "https://management.usgovcloudapi.net",
        AzureAuthorityHosts.AZURE_GOVERNMENT,
    ),
}

# file key -> FleetConfig field; camelCase keys match the cloud-config format
FILE_KEYS = {
    "cloud": "cloud",
    "tenantId": "tenant_id",
    "aadTenantId": "tenant_id",
    "subscriptionId": "subscription_id",
    "resourceGroup": "resource_group",
    "location": "location",
    "aadClientId": "client_id",
    "aadClientSecret": "client_secret",
    "refreshInterval": "refresh_interval",
    "fleets": "fleets",
}

ENV_KEYS = {
    "ARM_SUBSCRIPTION_ID": "subscription_id",
    "ARM_RESOURCE_GROUP": "resource_group",
    "ARM_TENANT_ID": "tenant_id",
    "ARM_CLIENT_ID": "client_id",
    "ARM_CLIENT_SECRET": "client_secret",
    "ARM_CLOUD": "cloud",
    "AZFLEET_FLEETS": "fleets",
    "AZFLEET_REFRESH_INTERVAL": "refresh_interval",
}


class ConfigError(Exception):
    """Raised when configuration operations fail."""

    pass


@dataclass
class FleetConfig:
    """Connection settings for the scale sets of one resource group."""

    subscription_id: str = ""
    resource_group: str = ""
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    cloud: str = "AzurePublicCloud"
    location: str = ""
    refresh_interval: float = DEFAULT_REFRESH_INTERVAL
    fleets: list[str] = field(default_factory=list)

    @property
    def uses_service_principal(self) -> bool:
        return bool(self.tenant_id or self.client_id or self.client_secret)

    @property
    def resource_manager_url(self) -> str:
        return CLOUD_ENDPOINTS[self.cloud][0]

    @property
    def authority_host(self) -> str:
        return CLOUD_ENDPOINTS[self.cloud][1]

    def validate(self) -> None:
        """Check required settings.

        Raises:
            ConfigError: On the first missing or invalid setting
        """
        if not self.resource_group:
            raise ConfigError("Resource group not found")
        if not self.subscription_id:
            raise ConfigError("Subscription ID not found")
        if self.cloud not in CLOUD_ENDPOINTS:
            raise ConfigError(
                f"Unknown cloud: {self.cloud}. Expected one of: {', '.join(CLOUD_ENDPOINTS)}"
            )
        if self.uses_service_principal:
            if not self.tenant_id:
                raise ConfigError("Tenant ID not found")
            if not self.client_id:
                raise ConfigError("ARM Client ID not found")
            if not self.client_secret:
                raise ConfigError("ARM Client Secret not found")
        if self.refresh_interval <= 0:
            raise ConfigError(f"Refresh interval must be positive, got {self.refresh_interval}")

        self.fleet_descriptors()

    def fleet_descriptors(self) -> list[FleetDescriptor]:
        """Parse configured fleets.

        Raises:
            ConfigError: If any entry is not MIN:MAX:NAME
        """
        try:
            return [FleetDescriptor.parse(spec) for spec in self.fleets]
        except ValueError as e:
            raise ConfigError(f"Invalid fleet entry: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        """Convert to file form, without the client secret."""
        data: dict[str, Any] = {
            "cloud": self.cloud,
            "subscriptionId": self.subscription_id,
            "resourceGroup": self.resource_group,
            "refreshInterval": self.refresh_interval,
            "fleets": list(self.fleets),
        }
        if self.tenant_id:
            data["aadTenantId"] = self.tenant_id
        if self.client_id:
            data["aadClientId"] = self.client_id
        if self.location:
            data["location"] = self.location
        return data

    def to_dict_masked(self) -> dict[str, Any]:
        """Convert to a dict safe for logging."""
        data = self.to_dict()
        if self.client_secret:
            data["aadClientSecret"] = "****"
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], keys: Mapping[str, str] = FILE_KEYS) -> "FleetConfig":
        """Create from a mapping using either file keys or field names.

        Raises:
            ConfigError: If a value has the wrong type
        """
        values: dict[str, Any] = {}
        field_names = set(cls.__dataclass_fields__)
        for key, value in data.items():
            name = keys.get(key, key)
            if name in field_names and value not in (None, ""):
                values[name] = value

        if isinstance(values.get("fleets"), str):
            values["fleets"] = [f.strip() for f in values["fleets"].split(",") if f.strip()]
        if "refresh_interval" in values:
            try:
                values["refresh_interval"] = float(values["refresh_interval"])
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid refresh interval: {values['refresh_interval']}") from e

        return cls(**values)


class ConfigManager:
    """Load and save azfleet configuration.

    Configuration is read from a TOML file when one is given, otherwise from
    ARM_* environment variables.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".azfleet"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    @classmethod
    def load_config(cls, path: str | Path) -> FleetConfig:
        """Load and validate configuration from a TOML file.

        Raises:
            ConfigError: If the file is missing, unreadable or invalid
        """
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            mode = config_path.stat().st_mode & 0o777
            if mode & 0o077:
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomli.load(f)
        except (OSError, tomli.TOMLDecodeError) as e:
            raise ConfigError(f"Failed to load config: {e}") from e

        # Accept a [global] table as written by cloud-config files
        if isinstance(data.get("global"), dict):
            data = {**data["global"], **{k: v for k, v in data.items() if k != "global"}}

        config = FleetConfig.from_dict(data)
        config.validate()
        logger.info(f"Read configuration for subscription {config.subscription_id}")
        logger.debug(f"Loaded config from {config_path}: {config.to_dict_masked()}")
        return config

    @classmethod
    def load_from_env(cls, environ: Mapping[str, str] | None = None) -> FleetConfig:
        """Load and validate configuration from ARM_* environment variables.

        Raises:
            ConfigError: If required variables are missing
        """
        env = os.environ if environ is None else environ
        data = {key: env[key] for key in ENV_KEYS if env.get(key)}

        config = FleetConfig.from_dict(data, keys=ENV_KEYS)
        config.validate()
        logger.info(f"Read configuration for subscription {config.subscription_id}")
        return config

    @classmethod
    def get_config(cls, path: str | Path | None = None) -> FleetConfig:
        """Load from ``path`` when given, otherwise from the environment."""
        if path:
            return cls.load_config(path)
        return cls.load_from_env()

    @classmethod
    def save_config(cls, config: FleetConfig, path: str | Path | None = None) -> Path:
        """Write configuration as TOML. The client secret is never written.

        Returns:
            Path written

        Raises:
            ConfigError: If writing fails
        """
        config_path = Path(path).expanduser() if path else cls.DEFAULT_CONFIG_FILE
        temp_path = config_path.with_suffix(".tmp")

        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)

            doc = tomlkit.document()
            for key, value in config.to_dict().items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)
            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")
            return config_path

        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e
