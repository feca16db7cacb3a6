"""
Session Models
==============

Data objects shared by the identity service client, the session store
and the session controller.

Wire format follows the identity backend's camelCase JSON:
- Credential: id, userAddress, credentialData, issuedAt, suiVcId
- Verification outcome: isValid, hasAccess, message
"""

from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field
from enum import Enum


class SessionPhase(Enum):
    """State-machine phase for the current account"""
    UNBOUND = "unbound"                              # No wallet account
    CHECKING = "checking"                            # DID lookup in flight
    NO_DID = "no_did"
    HAS_DID = "has_did"
    FETCHING_CREDENTIALS = "fetching_credentials"
    READY = "ready"


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """Mask all but the last `visible_chars` characters of a value"""
    if len(value) <= visible_chars:
        return value
    return "*" * (len(value) - visible_chars) + value[-visible_chars:]


@dataclass(frozen=True)
class CredentialData:
    """KYC claims submitted for a credential. Opaque strings to the session."""
    full_name: str
    date_of_birth: str
    national_id: str
    address: str

    def missing_fields(self) -> List[str]:
        """Names of required fields left blank"""
        return [
            name for name, value in (
                ("fullName", self.full_name),
                ("dateOfBirth", self.date_of_birth),
                ("nationalId", self.national_id),
                ("address", self.address),
            )
            if not value or not value.strip()
        ]

    def masked(self) -> Dict[str, str]:
        """Loggable view with personal identifiers masked"""
        return {
            "fullName": self.full_name,
            "dateOfBirth": mask_sensitive(self.date_of_birth),
            "nationalId": mask_sensitive(self.national_id),
        }

    def to_dict(self) -> Dict[str, str]:
        return {
            "fullName": self.full_name,
            "dateOfBirth": self.date_of_birth,
            "nationalId": self.national_id,
            "address": self.address
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialData":
        return cls(
            full_name=str(data["fullName"]),
            date_of_birth=str(data["dateOfBirth"]),
            national_id=str(data["nationalId"]),
            address=str(data["address"])
        )


@dataclass(frozen=True)
class Credential:
    """
    KYC credential issued by the identity backend

    `ledger_id` is only set once the backend has anchored the credential
    on the ledger; callers must not assume it is present.
    """
    id: str
    user_address: str
    credential_data: CredentialData
    issued_at: str
    ledger_id: Optional[str] = None

    @property
    def verification_id(self) -> str:
        """Identifier to present for verification: ledger id when anchored"""
        return self.ledger_id or self.id

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "userAddress": self.user_address,
            "credentialData": self.credential_data.to_dict(),
            "issuedAt": self.issued_at
        }
        if self.ledger_id:
            result["suiVcId"] = self.ledger_id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        """Create Credential from backend JSON"""
        for key in ("id", "userAddress"):
            if not isinstance(data[key], str) or not data[key]:
                raise ValueError(f"{key} must be a non-empty string")
        return cls(
            id=data["id"],
            user_address=data["userAddress"],
            credential_data=CredentialData.from_dict(data["credentialData"]),
            issued_at=str(data["issuedAt"]),
            ledger_id=data.get("suiVcId") or None
        )


@dataclass(frozen=True)
class VerificationOutcome:
    """
    Result of a credential verification request

    Validity and access are independent: a credential can be valid
    without meeting the access policy, and every combination of the two
    flags is accepted as-is.
    """
    is_valid: bool
    has_access: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "hasAccess": self.has_access,
            "message": self.message
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationOutcome":
        is_valid = data["isValid"]
        has_access = data["hasAccess"]
        if not isinstance(is_valid, bool) or not isinstance(has_access, bool):
            raise ValueError("isValid and hasAccess must be booleans")
        return cls(
            is_valid=is_valid,
            has_access=has_access,
            message=str(data.get("message") or "")
        )


@dataclass(frozen=True)
class DIDStatus:
    """Answer to a DID lookup for one account"""
    has_did: bool
    did: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DIDStatus":
        has_did = data["hasDid"]
        if not isinstance(has_did, bool):
            raise ValueError("hasDid must be a boolean")
        return cls(has_did=has_did, did=data.get("didId") or None)


@dataclass(frozen=True)
class SessionSnapshot:
    """
    Complete client-side view of identity and credential state

    Snapshots are immutable; the store replaces the whole snapshot on
    every mutation. `epoch` increases on each account change and is used
    to recognise responses issued under a previous account.
    """
    account: Optional[str] = None
    phase: SessionPhase = SessionPhase.UNBOUND
    did_present: bool = False
    did: Optional[str] = None
    credentials: Tuple[Credential, ...] = field(default_factory=tuple)
    verification: Optional[VerificationOutcome] = None
    loading: bool = False
    error: Optional[str] = None
    epoch: int = 0

    @property
    def credential_count(self) -> int:
        return len(self.credentials)

    @property
    def latest_credential(self) -> Optional[Credential]:
        """Most recently issued credential (insertion order)"""
        return self.credentials[-1] if self.credentials else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "phase": self.phase.value,
            "hasDid": self.did_present,
            "didId": self.did,
            "credentials": [c.to_dict() for c in self.credentials],
            "verification": self.verification.to_dict() if self.verification else None,
            "loading": self.loading,
            "error": self.error
        }
