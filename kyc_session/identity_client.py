"""
Identity Service Client
=======================

Async HTTP boundary to the identity backend.

Operations:
- check-DID:          GET  /users/{address}/did
- create-DID:         POST /users/{address}/did
- list-credentials:   GET  /users/{address}/credentials
- create-credential:  POST /users/credentials
- verify-credential:  POST /users/verify

The client holds no session state. Every failure (timeout, connection
error, non-2xx status, malformed payload) is normalised into an
IdentityServiceError carrying a human-readable message.
"""

import logging
from urllib.parse import quote
from typing import Optional, Dict, Any, List

import httpx

from .models import Credential, CredentialData, DIDStatus, VerificationOutcome
from .session_config import SessionSettings

logger = logging.getLogger("IdentityServiceClient")


DEFAULT_ERROR_MESSAGES = {
    "check_did": "Failed to check DID",
    "create_did": "Failed to create DID",
    "list_credentials": "Failed to fetch credentials",
    "create_credential": "Failed to create credential",
    "verify_credential": "Failed to verify credential",
}


class IdentityServiceError(Exception):
    """Transport or backend failure on a remote identity operation"""

    def __init__(self, operation: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.operation = operation
        self.message = message
        self.status_code = status_code


def _path_segment(address: str) -> str:
    """Escape an opaque account identity for use as one URL path segment"""
    return quote(address, safe="")


def _error_message(response: httpx.Response, operation: str) -> str:
    """Backend `message`, else FastAPI `detail`, else the operation default"""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return DEFAULT_ERROR_MESSAGES[operation]


class IdentityServiceClient:
    """
    Client for the identity backend

    Can be used as an async context manager; the underlying
    httpx.AsyncClient is closed on exit when this client created it.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Args:
            base_url: Backend URL including the API prefix
            timeout: Request timeout in seconds
            http_client: Pre-built client (tests, shared connection pools)
        """
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"}
        )

    @classmethod
    def from_settings(
        cls,
        settings: SessionSettings,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> "IdentityServiceClient":
        return cls(
            base_url=settings.api_base_url,
            timeout=settings.REQUEST_TIMEOUT,
            http_client=http_client
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "IdentityServiceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ==================== TRANSPORT ====================

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> Any:
        try:
            response = await self._http.request(method, path, json=payload)
        except httpx.TimeoutException:
            logger.warning(f"{operation}: request timed out")
            raise IdentityServiceError(operation, f"{DEFAULT_ERROR_MESSAGES[operation]}: request timed out")
        except httpx.RequestError as e:
            logger.warning(f"{operation}: request failed: {e}")
            raise IdentityServiceError(operation, f"{DEFAULT_ERROR_MESSAGES[operation]}: {e}")

        if response.is_error:
            message = _error_message(response, operation)
            logger.warning(f"{operation}: HTTP {response.status_code}: {message}")
            raise IdentityServiceError(operation, message, status_code=response.status_code)

        try:
            return response.json()
        except ValueError:
            raise IdentityServiceError(
                operation,
                f"{DEFAULT_ERROR_MESSAGES[operation]}: invalid JSON response",
                status_code=response.status_code
            )

    @staticmethod
    def _malformed(operation: str, error: Exception) -> IdentityServiceError:
        logger.warning(f"{operation}: malformed response: {error!r}")
        return IdentityServiceError(operation, f"{DEFAULT_ERROR_MESSAGES[operation]}: malformed response")

    # ==================== DID OPERATIONS ====================

    async def check_did(self, address: str) -> DIDStatus:
        """Look up whether a DID is registered for the account"""
        data = await self._request("check_did", "GET", f"/users/{_path_segment(address)}/did")
        try:
            return DIDStatus.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise self._malformed("check_did", e)

    async def create_did(self, address: str) -> str:
        """
        Register a DID for the account

        Returns:
            The DID handle assigned by the backend
        """
        data = await self._request("create_did", "POST", f"/users/{_path_segment(address)}/did")
        try:
            did = data["didId"]
        except (KeyError, TypeError) as e:
            raise self._malformed("create_did", e)
        if not isinstance(did, str) or not did:
            raise self._malformed("create_did", ValueError("empty didId"))
        return did

    # ==================== CREDENTIALS ====================

    async def list_credentials(self, address: str) -> List[Credential]:
        """Credentials issued to the account, in issuance order"""
        data = await self._request("list_credentials", "GET", f"/users/{_path_segment(address)}/credentials")
        if not isinstance(data, list):
            raise self._malformed("list_credentials", TypeError("expected a list"))
        try:
            return [Credential.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            raise self._malformed("list_credentials", e)

    async def create_credential(self, address: str, credential_data: CredentialData) -> Credential:
        payload = {
            "userAddress": address,
            "credentialData": credential_data.to_dict()
        }
        data = await self._request("create_credential", "POST", "/users/credentials", payload)
        try:
            return Credential.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise self._malformed("create_credential", e)

    async def verify_credential(self, address: str, credential_id: str) -> VerificationOutcome:
        """Ask the backend whether a credential is valid and grants access"""
        payload = {"userAddress": address, "vcId": credential_id}
        data = await self._request("verify_credential", "POST", "/users/verify", payload)
        try:
            return VerificationOutcome.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise self._malformed("verify_credential", e)
