"""Credential factory for Azure authentication.

Creates Azure Identity SDK credential objects from a FleetConfig.

Supported credential types:
- ClientSecretCredential: Service principal with client secret
- AzureCliCredential: Delegate to Azure CLI when no service principal is set

Security:
- No token storage - delegates to Azure Identity SDK
- Error messages never include the client secret
"""

import logging
from typing import Any

from azure.identity import AzureCliCredential, ClientSecretCredential

from azfleet.config_manager import FleetConfig

logger = logging.getLogger(__name__)


class CredentialFactoryError(Exception):
    """Raised when credential creation fails."""

    pass


class CredentialFactory:
    """Factory for creating Azure Identity credentials."""

    @staticmethod
    def create_credential(config: FleetConfig) -> Any:
        """Create Azure Identity credential from configuration.

        Args:
            config: Validated fleet configuration

        Returns:
            Azure Identity credential object (TokenCredential)

        Raises:
            CredentialFactoryError: If credential creation fails
        """
        if config.uses_service_principal:
            return CredentialFactory._create_sp_secret_credential(config)
        return CredentialFactory._create_cli_credential()

    @staticmethod
    def _create_cli_credential() -> AzureCliCredential:
        try:
            logger.debug("Using Azure CLI credential")
            return AzureCliCredential()
        except Exception as e:
            raise CredentialFactoryError(
                f"Failed to create Azure CLI credential. "
                f"Is Azure CLI installed and authenticated? Error: {type(e).__name__}"
            ) from e

    @staticmethod
    def _create_sp_secret_credential(config: FleetConfig) -> ClientSecretCredential:
        """Create service principal credential with client secret.

        Raises:
            CredentialFactoryError: If any service principal field is missing
        """
        if not (config.tenant_id and config.client_id and config.client_secret):
            raise CredentialFactoryError(
                "Service principal requires tenant id, client id and client secret"
            )

        try:
            credential = ClientSecretCredential(
                tenant_id=config.tenant_id,
                client_id=config.client_id,
                client_secret=config.client_secret,
                authority=config.authority_host,
            )
        except Exception as e:
            raise CredentialFactoryError(
                f"Failed to create service principal credential: {type(e).__name__}"
            ) from e

        logger.debug(f"Using service principal credential for client {config.client_id}")
        return credential
