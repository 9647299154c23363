"""Contribution runner configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from .errors import ConfigurationError

load_dotenv()

DEFAULT_PART_SIZE_BYTES = 50 * 1024 * 1024


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class ContributeConfig:
    """Immutable contribution runner configuration."""

    # Object storage
    s3_region: str = field(default_factory=lambda: os.environ.get("P2_S3_REGION", "us-east-1"))
    s3_access_key: str = field(default_factory=lambda: os.environ.get("P2_S3_ACCESS_KEY", ""))
    s3_secret_key: str = field(default_factory=lambda: os.environ.get("P2_S3_SECRET_KEY", ""))
    s3_endpoint_url: str = field(default_factory=lambda: os.environ.get("P2_S3_ENDPOINT_URL", ""))
    bucket_postfix: str = field(default_factory=lambda: os.environ.get("P2_CEREMONY_BUCKET_POSTFIX", "-ph2-ceremony"))

    # Chunked upload
    presigned_url_expiration_s: int | None = field(
        default_factory=lambda: _env_int("P2_PRESIGNED_URL_EXPIRATION_IN_SECONDS", None)
    )
    part_size_bytes: int = field(
        default_factory=lambda: _env_int("P2_UPLOAD_PART_SIZE_BYTES", DEFAULT_PART_SIZE_BYTES)
    )
    max_concurrent_parts: int = field(default_factory=lambda: _env_int("P2_UPLOAD_MAX_CONCURRENT_PARTS", 1))

    # Coordinator API (checkpoint authority) and verification
    coordinator_api_url: str = field(default_factory=lambda: os.environ.get("P2_COORDINATOR_API_URL", ""))
    coordinator_token: str = field(default_factory=lambda: os.environ.get("P2_COORDINATOR_TOKEN", ""))
    verify_url: str = field(default_factory=lambda: os.environ.get("P2_VERIFY_CONTRIBUTION_URL", ""))
    verify_timeout_s: int = field(default_factory=lambda: _env_int("P2_VERIFY_TIMEOUT_SECONDS", 3600))

    # Local computation
    work_dir: str = field(default_factory=lambda: os.environ.get("P2_WORK_DIR", ".phase2"))
    snarkjs_bin: str = field(default_factory=lambda: os.environ.get("P2_SNARKJS_BIN", "snarkjs"))
    num_iterations_exp: int = 10

    # Logging
    log_dir: str = field(default_factory=lambda: os.environ.get("P2_LOG_DIR", "logs"))
    log_retention_days: int = field(default_factory=lambda: _env_int("P2_LOG_RETENTION_DAYS", 7))
    log_level: str = field(default_factory=lambda: os.environ.get("P2_LOG_LEVEL", "INFO"))

    @property
    def contributions_dir(self) -> str:
        return os.path.join(self.work_dir, "contributions")

    @property
    def transcripts_dir(self) -> str:
        return os.path.join(self.work_dir, "transcripts")

    @property
    def final_contributions_dir(self) -> str:
        return os.path.join(self.work_dir, "final", "contributions")

    @property
    def final_transcripts_dir(self) -> str:
        return os.path.join(self.work_dir, "final", "transcripts")

    def require_upload_settings(self) -> int:
        """Return the presigned URL expiration, raising if it is not configured."""
        if not self.presigned_url_expiration_s or self.presigned_url_expiration_s <= 0:
            raise ConfigurationError("P2_PRESIGNED_URL_EXPIRATION_IN_SECONDS env var is required")
        if self.part_size_bytes <= 0:
            raise ConfigurationError("P2_UPLOAD_PART_SIZE_BYTES must be positive")
        if self.max_concurrent_parts < 1:
            raise ConfigurationError("P2_UPLOAD_MAX_CONCURRENT_PARTS must be at least 1")
        return self.presigned_url_expiration_s

    @classmethod
    def from_env(cls, require_coordinator: bool = True) -> ContributeConfig:
        """Create config from environment, raising on missing required vars."""
        cfg = cls()
        if not cfg.s3_access_key or not cfg.s3_secret_key:
            raise ConfigurationError("P2_S3_ACCESS_KEY and P2_S3_SECRET_KEY env vars are required")
        if require_coordinator and not cfg.coordinator_api_url:
            raise ConfigurationError("P2_COORDINATOR_API_URL env var is required")
        if not cfg.verify_url:
            raise ConfigurationError("P2_VERIFY_CONTRIBUTION_URL env var is required")
        cfg.require_upload_settings()
        return cfg
