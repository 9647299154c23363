"""Phase 2 storage adapters: S3 multi-part transfers and participant checkpoints."""

from .checkpoint_client import HttpCheckpointAuthority, LocalCheckpointAuthority
from .s3_client import HttpPartTransmitter, S3TransferAuthority

__all__ = [
    "HttpCheckpointAuthority",
    "LocalCheckpointAuthority",
    "HttpPartTransmitter",
    "S3TransferAuthority",
]
