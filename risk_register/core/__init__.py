"""Core application utilities."""

from .config import Settings, get_settings
from .database import (
    async_session_factory,
    close_db,
    engine,
    get_session,
    init_db,
)
from .dependencies import (
    AdminDep,
    PrincipalDep,
    SessionDep,
    get_current_principal,
    require_admin,
)
from .principal import Principal
from .security import (
    canonical_json,
    create_access_token,
    decode_token,
    hash_content,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "engine",
    "async_session_factory",
    "get_session",
    "init_db",
    "close_db",
    # Dependencies
    "Principal",
    "get_current_principal",
    "require_admin",
    "PrincipalDep",
    "AdminDep",
    "SessionDep",
    # Security
    "create_access_token",
    "decode_token",
    "hash_content",
    "canonical_json",
]
