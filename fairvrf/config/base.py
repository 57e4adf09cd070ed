"""Base configuration for the FairVRF oracle."""

from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from fairvrf import constants


class RotationPolicy(BaseModel):
    """When the hash chain should be replaced.

    Read-only after construction. The decision it drives is advisory: the
    oracle keeps serving past the threshold until the chain is exhausted.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = Field(default=True)
    threshold_percentage: float = Field(
        default=constants.DEFAULT_ROTATION_THRESHOLD,
        gt=0,
        le=100,
        description="Rotate once this share of the chain is consumed",
    )
    min_remaining_seeds: int = Field(
        default=constants.DEFAULT_MIN_REMAINING_SEEDS,
        ge=0,
        description="Rotate once this few seeds remain",
    )
    auto_rotate: bool = Field(
        default=True,
        description="Generate and publish a new chain without operator action",
    )


class OracleSettings(BaseSettings):
    """Runtime settings, read from the environment and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Ledger
    rpc_url: str = Field(default="http://127.0.0.1:8545/", description="JSON-RPC endpoint")
    private_key: Optional[str] = Field(default=None, description="Fulfiller signing key")
    contract_address: Optional[str] = Field(default=None, description="FairVRF contract")
    chain_id: Optional[int] = Field(default=None, description="Detected from the node when unset")

    # Chain
    chain_path: Path = Field(default=Path(constants.DEFAULT_CHAIN_FILE))
    chain_length: int = Field(default=constants.DEFAULT_CHAIN_LENGTH, ge=2)
    auto_generate_chain: bool = Field(default=False)

    # Rotation
    rotation_enabled: bool = Field(default=True)
    rotation_threshold_percentage: float = Field(
        default=constants.DEFAULT_ROTATION_THRESHOLD, gt=0, le=100
    )
    min_remaining_seeds: int = Field(default=constants.DEFAULT_MIN_REMAINING_SEEDS, ge=0)
    auto_rotate: bool = Field(default=True)

    # Watcher
    poll_interval: float = Field(default=constants.POLL_INTERVAL, gt=0)
    poll_overlap_blocks: int = Field(default=constants.POLL_OVERLAP_BLOCKS, ge=0)
    initial_lookback_blocks: int = Field(default=constants.INITIAL_LOOKBACK_BLOCKS, ge=0)
    deep_scan_interval: float = Field(default=constants.DEEP_SCAN_INTERVAL, gt=0)
    deep_scan_window: int = Field(default=constants.DEEP_SCAN_WINDOW, ge=1)
    blockhash_horizon: int = Field(default=constants.BLOCKHASH_HORIZON, ge=1)

    # Fulfillment
    retry_interval: float = Field(default=constants.RETRY_INTERVAL, gt=0)
    retry_delay: float = Field(default=constants.RETRY_DELAY, ge=0)
    max_retry_attempts: int = Field(default=constants.MAX_RETRY_ATTEMPTS, ge=1)
    check_already_fulfilled: bool = Field(default=True)
    confirmation_timeout: float = Field(default=constants.CONFIRMATION_TIMEOUT, gt=0)
    receipt_timeout: float = Field(default=constants.RECEIPT_TIMEOUT, gt=0)

    # Service
    health_log_interval: float = Field(default=constants.HEALTH_LOG_INTERVAL, gt=0)
    metrics_port: Optional[int] = Field(default=None, description="Prometheus exporter port")
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

    def rotation_policy(self) -> RotationPolicy:
        """Build the rotation policy from the flat settings."""
        return RotationPolicy(
            enabled=self.rotation_enabled,
            threshold_percentage=self.rotation_threshold_percentage,
            min_remaining_seeds=self.min_remaining_seeds,
            auto_rotate=self.auto_rotate,
        )

    def get_watcher_settings(self) -> Dict[str, Any]:
        """Get ledger watcher settings."""
        return {
            "overlap_blocks": self.poll_overlap_blocks,
            "initial_lookback_blocks": self.initial_lookback_blocks,
            "deep_scan_window": self.deep_scan_window,
            "blockhash_horizon": self.blockhash_horizon,
        }

    def get_fulfillment_settings(self) -> Dict[str, Any]:
        """Get fulfillment coordinator settings."""
        return {
            "retry_delay": self.retry_delay,
            "max_retry_attempts": self.max_retry_attempts,
            "check_already_fulfilled": self.check_already_fulfilled,
            "confirmation_timeout": self.confirmation_timeout,
        }
