from .db import init_db, get_db, get_session_factory
from .models import Base, Verification, VerificationStatus, VerificationTier, RegistryRecord
from .registry_store import SqlRegistryStorage

__all__ = [
    'init_db',
    'get_db',
    'get_session_factory',
    'Base',
    'Verification',
    'VerificationStatus',
    'VerificationTier',
    'RegistryRecord',
    'SqlRegistryStorage',
]
