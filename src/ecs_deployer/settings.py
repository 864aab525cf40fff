# src/ecs_deployer/settings.py
from typing import Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """
    Single source of truth for all deployer settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from ecs_deployer.settings import get_settings
        settings = get_settings()
        timeout = settings.convergence_timeout
    """

    # Application Settings
    app_name: str = Field(
        default="ecs-deployer",
        description="Application name, used for resource tags"
    )

    # Deployment Mode
    deployment_mode: str = Field(
        default="aws-prod",
        description="Deployment mode: local-dev, aws-mock, or aws-prod"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    aws_account_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCOUNT_ID",
        description="AWS Account ID (auto-detected through STS if not provided)"
    )

    # Run state and locking
    state_dir: str = Field(
        default=".ecs_deployer",
        description="Directory holding run state files and cluster lock files"
    )

    lock_stale_after: int = Field(
        default=3600,
        ge=1,
        description="Seconds after which a cluster lock file is considered stale"
    )

    # Apply engine
    retry_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Maximum attempts per operation on transient failures"
    )

    retry_base_delay: float = Field(
        default=1.0,
        ge=0,
        description="Initial delay between retries in seconds"
    )

    retry_backoff: float = Field(
        default=2.0,
        ge=1.0,
        description="Backoff multiplier applied to the delay after each retry"
    )

    retry_max_delay: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound on a single retry delay in seconds"
    )

    max_parallel_operations: int = Field(
        default=1,
        ge=1,
        description="Independent operation chains applied concurrently; 1 applies strictly in plan order"
    )

    # Status reporter
    poll_interval: float = Field(
        default=15.0,
        gt=0,
        description="Seconds between service stability checks"
    )

    convergence_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Default seconds to wait for a service to converge"
    )

    flap_threshold: int = Field(
        default=3,
        ge=1,
        description="Failed tasks on the primary deployment that mark a rollout degraded"
    )

    # Spec defaults
    default_execution_role_name: str = Field(
        default="ecsTaskExecutionRole",
        description="Execution role used when a descriptor does not name one"
    )

    verify_image: bool = Field(
        default=True,
        description="Check that ECR images exist before planning"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator('deployment_mode', mode='before')
    @classmethod
    def normalize_deployment_mode(cls, v):
        """Normalize deployment mode values for backwards compatibility."""
        if v:
            mode_mapping = {
                "local-mock": "local-dev",
                "mock": "aws-mock",
                "cloud": "aws-prod",
                "prod": "aws-prod",
            }
            return mode_mapping.get(v, v)
        return v

    @field_validator('deployment_mode')
    @classmethod
    def validate_deployment_mode(cls, v):
        """Validate deployment mode is one of the allowed values."""
        valid_modes = ["local-dev", "aws-mock", "aws-prod"]
        if v not in valid_modes:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {valid_modes}")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = str(v).upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log_level: {v}")
        return level

    @model_validator(mode='after')
    def apply_local_mode_defaults(self):
        """Point local modes at the mock endpoint with mock credentials."""
        if self.deployment_mode in ["local-dev", "aws-mock"]:
            if self.aws_endpoint_url is None:
                self.aws_endpoint_url = "http://localhost:5000"
            if self.aws_access_key_id is None:
                self.aws_access_key_id = "mock"
            if self.aws_secret_access_key is None:
                self.aws_secret_access_key = "mock"
        return self

    @property
    def is_local(self) -> bool:
        return self.deployment_mode in ["local-dev", "aws-mock"]

    def retry_policy(self) -> dict:
        """Retry keyword arguments for the apply engine."""
        return {
            'max_attempts': self.retry_max_attempts,
            'delay': self.retry_base_delay,
            'backoff': self.retry_backoff,
            'max_delay': self.retry_max_delay,
        }

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_prefix="ECS_DEPLOYER_",
        env_file=(".env", ".env.ecs-deployer"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
