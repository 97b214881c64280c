"""Centralized configuration management for the escrow checkout service.

Loads all configuration from environment variables with sensible defaults.
Contract addresses stay empty until the contracts are deployed; a chain with
missing required contracts is reported as not ready instead of failing here.
"""

from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for the service, worker and checkout SDK."""

    app_env: Literal["development", "production", "test"] = Field(
        default="production",
        description="Arbitrum Sepolia is only enabled in development",
    )
    default_chain_id: int = Field(default=42161, description="Arbitrum One")

    # Arbitrum One contracts
    escrow_factory_address: str = Field(default="")
    merchant_registry_address: str = Field(default="")
    payment_processor_address: str = Field(default="")
    fee_collector_address: str = Field(default="")

    # Arbitrum Sepolia contracts
    testnet_escrow_factory: str = Field(default="")
    testnet_merchant_registry: str = Field(default="")
    testnet_payment_processor: str = Field(default="")
    testnet_fee_collector: str = Field(default="")

    # Arbitrum Sepolia test tokens (no canonical deployment)
    testnet_pyusd_address: str = Field(default="")
    testnet_usdc_address: str = Field(default="")

    # RPC overrides (empty means the catalog default)
    arbitrum_rpc_url: str = Field(default="")
    arbitrum_sepolia_rpc_url: str = Field(default="")

    # Key used by the release engine for timer-driven releases
    operator_private_key: str = Field(
        default="", description="Empty runs the release engine in simulation mode"
    )

    # Service
    escrow_host: str = Field(default="0.0.0.0")
    escrow_port: int = Field(default=4030)
    escrow_url: str = Field(default="http://localhost:4030")

    # Database
    database_path: str = Field(default="./escrow.db")

    # Auto-release
    auto_release_enabled: bool = Field(default=True)
    auto_release_poll_seconds: float = Field(default=60.0)
    default_auto_release_hours: Optional[int] = Field(
        default=None, description="Used when neither the rule nor the payee sets hours"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["escrow", "worker", "checkout"]) -> None:
    """Validate that required configuration is present for a specific service.

    Args:
        service: The service name to validate configuration for.

    Raises:
        ValueError: If required configuration is missing.
    """
    errors = []

    if service in ["escrow", "worker"]:
        if not config.database_path:
            errors.append("DATABASE_PATH must be set")

    if service == "worker":
        if config.auto_release_poll_seconds <= 0:
            errors.append("AUTO_RELEASE_POLL_SECONDS must be positive")

    if service == "checkout":
        if not config.escrow_url:
            errors.append("ESCROW_URL must be set for the checkout client")

    if config.default_auto_release_hours is not None and not (
        1 <= config.default_auto_release_hours <= 720
    ):
        errors.append("DEFAULT_AUTO_RELEASE_HOURS must be between 1 and 720")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
