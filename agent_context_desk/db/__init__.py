"""
Database package for Agent Context Desk.
"""

from .base import Base, get_db, get_engine, get_session_local
from .bundle_models import BundleReceiptModel, ContextBundleModel
from .pin_models import ArtifactPinModel

__all__ = [
    "Base",
    "get_engine",
    "get_session_local",
    "get_db",
    "ContextBundleModel",
    "BundleReceiptModel",
    "ArtifactPinModel",
]
