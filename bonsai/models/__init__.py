"""Database models."""
from bonsai.models.state_blob import StateBlob

__all__ = [
    "StateBlob",
]
