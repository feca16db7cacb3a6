"""
KYC Identity Session
====================

Client-side session for a wallet-holding user: DID lookup and creation,
KYC credential issuance and credential verification against the
identity backend.

Components:
- IdentityServiceClient: async HTTP boundary to the identity backend
- SessionStore: single-writer holder of the session snapshot
- SessionController: state machine and commands
- SessionSettings: KYC_* environment configuration
"""

from .models import (
    Credential,
    CredentialData,
    DIDStatus,
    SessionPhase,
    SessionSnapshot,
    VerificationOutcome,
    mask_sensitive,
)
from .identity_client import IdentityServiceClient, IdentityServiceError
from .session_store import SessionStore
from .session_controller import (
    SessionController,
    SessionPolicyError,
    SessionBusyError,
    create_session,
)
from .session_config import SessionSettings, configure_logging

__version__ = "1.0.0"
__all__ = [
    # Models
    "Credential",
    "CredentialData",
    "DIDStatus",
    "SessionPhase",
    "SessionSnapshot",
    "VerificationOutcome",
    "mask_sensitive",

    # Remote client
    "IdentityServiceClient",
    "IdentityServiceError",

    # Session
    "SessionStore",
    "SessionController",
    "SessionPolicyError",
    "SessionBusyError",
    "create_session",

    # Config
    "SessionSettings",
    "configure_logging",
]
