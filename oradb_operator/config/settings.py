"""
Operator configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main operator settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Oracle Database Operator", description="Application name")
    app_version: str = Field(default="0.3.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production/testing)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Health / metrics server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, ge=1, le=65535, description="Server port")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for in-cluster)"
    )
    k8s_in_cluster: bool = Field(default=False, description="Running inside Kubernetes cluster")
    watch_namespace: str = Field(
        default="", description="Namespace to watch (empty string watches all namespaces)"
    )

    # OCI
    oci_config_file: str = Field(default="~/.oci/config", description="OCI SDK config file")
    oci_profile: str = Field(default="DEFAULT", description="OCI SDK config profile")
    oci_region: Optional[str] = Field(default=None, description="Override the profile region")

    # Remote actuators
    actuator_timeout_seconds: float = Field(
        default=60.0, gt=0, le=600, description="Upper bound for a single remote call"
    )
    gateway_verify_tls: bool = Field(
        default=True, description="Verify the REST gateway certificate against the CDB CA"
    )
    gateway_ords_port: int = Field(default=8888, ge=1, le=65535, description="Default ORDS port")

    # Reconciler
    resync_interval_seconds: float = Field(
        default=60.0, ge=5, le=3600, description="Requeue interval while a resource is not terminal"
    )
    poll_interval_seconds: float = Field(
        default=15.0, ge=1, le=600, description="Requeue interval while waiting for a remote state"
    )
    conflict_requeue_seconds: float = Field(
        default=5.0, ge=0.5, le=300, description="Requeue delay after a remote conflict"
    )
    transient_backoff_base_seconds: float = Field(
        default=2.0, ge=0.1, le=60, description="Initial backoff after a transient failure"
    )
    transient_backoff_max_seconds: float = Field(
        default=300.0, ge=1, le=3600, description="Backoff cap after repeated transient failures"
    )
    precondition_max_wait_seconds: float = Field(
        default=1800.0, ge=10, description="Wait before a blocked action is surfaced on status"
    )
    pending_action_timeout_seconds: float = Field(
        default=600.0, ge=10, description="Wait before an unconfirmed dispatch may be re-sent"
    )
    deletion_wait_timeout_seconds: float = Field(
        default=300.0, ge=10, description="Wait for TERMINATING before re-sending a delete"
    )
    max_concurrent_reconciles: int = Field(
        default=4, ge=1, le=64, description="Number of resources reconciled concurrently"
    )

    # Redis (leader election)
    leader_election_enabled: bool = Field(default=False, description="Run reconcilers only on the leader")
    leader_lease_seconds: int = Field(default=30, ge=5, le=300, description="Leader lease duration")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    redis_max_connections: int = Field(default=10, ge=1, le=100, description="Redis max connections")

    # Monitoring
    prometheus_enabled: bool = Field(default=True, description="Expose Prometheus metrics")
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")
    sentry_traces_sample_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Sentry traces sample rate"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        valid_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


# Global settings instance
settings = Settings()
