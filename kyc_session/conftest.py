"""
Shared test fixtures
====================

- InMemoryIdentityBackend + build_backend_app: FastAPI rendition of the
  identity backend, served to IdentityServiceClient through
  httpx.ASGITransport
- ScriptedIdentityService: in-process stand-in for the client whose
  calls can be held open, used for race and single-flight tests
"""

import asyncio
from typing import Optional, Dict, Any, List, Tuple

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from kyc_session.identity_client import IdentityServiceClient, IdentityServiceError
from kyc_session.models import Credential, CredentialData, DIDStatus, VerificationOutcome


# ==================== HTTP BACKEND ====================

class CredentialDataIn(BaseModel):
    fullName: str
    dateOfBirth: str
    nationalId: str
    address: str


class CreateCredentialIn(BaseModel):
    userAddress: str
    credentialData: CredentialDataIn


class VerifyIn(BaseModel):
    userAddress: str
    vcId: str


class InMemoryIdentityBackend:
    """Backend state; `failures` maps an operation to (status, body) to return instead"""

    def __init__(self):
        self.dids: Dict[str, str] = {}
        self.credentials: Dict[str, List[Dict[str, Any]]] = {}
        self.verdicts: Dict[str, Dict[str, Any]] = {}
        self.failures: Dict[str, Tuple[int, Any]] = {}
        self.requests: List[str] = []
        self._counter = 0

    def fail(self, operation: str, status_code: int, body: Any) -> None:
        self.failures[operation] = (status_code, body)

    def failure_response(self, operation: str) -> Optional[JSONResponse]:
        self.requests.append(operation)
        if operation not in self.failures:
            return None
        status_code, body = self.failures[operation]
        return JSONResponse(status_code=status_code, content=body)

    def issue(self, address: str, data: Dict[str, str], ledger_id: Optional[str] = None) -> Dict[str, Any]:
        self._counter += 1
        record = {
            "id": f"cred-{self._counter}",
            "userAddress": address,
            "credentialData": data,
            "issuedAt": f"2024-05-0{self._counter}T10:00:00.000Z"
        }
        if ledger_id:
            record["suiVcId"] = ledger_id
        self.credentials.setdefault(address, []).append(record)
        return record


def build_backend_app(backend: InMemoryIdentityBackend) -> FastAPI:
    app = FastAPI(title="Identity Backend (test)")

    @app.get("/api/users/{address}/did")
    async def check_did(address: str):
        failure = backend.failure_response("check_did")
        if failure is not None:
            return failure
        did = backend.dids.get(address)
        if did is None:
            return {"hasDid": False}
        return {"hasDid": True, "didId": did}

    @app.post("/api/users/{address}/did")
    async def create_did(address: str):
        failure = backend.failure_response("create_did")
        if failure is not None:
            return failure
        if address in backend.dids:
            raise HTTPException(status_code=409, detail="DID already exists")
        backend.dids[address] = f"did:sui:{address}"
        return {"didId": backend.dids[address]}

    @app.get("/api/users/{address}/credentials")
    async def list_credentials(address: str):
        failure = backend.failure_response("list_credentials")
        if failure is not None:
            return failure
        return backend.credentials.get(address, [])

    @app.post("/api/users/credentials")
    async def create_credential(payload: CreateCredentialIn):
        failure = backend.failure_response("create_credential")
        if failure is not None:
            return failure
        if payload.userAddress not in backend.dids:
            raise HTTPException(status_code=400, detail="User has no DID")
        return backend.issue(payload.userAddress, payload.credentialData.model_dump())

    @app.post("/api/users/verify")
    async def verify_credential(payload: VerifyIn):
        failure = backend.failure_response("verify_credential")
        if failure is not None:
            return failure
        verdict = backend.verdicts.get(payload.vcId)
        if verdict is None:
            raise HTTPException(status_code=404, detail="Credential not found")
        return verdict

    return app


@pytest.fixture
def backend() -> InMemoryIdentityBackend:
    return InMemoryIdentityBackend()


@pytest_asyncio.fixture
async def identity_client(backend):
    http = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=build_backend_app(backend)),
        base_url="http://testserver/api"
    )
    client = IdentityServiceClient("http://testserver/api", http_client=http)
    yield client
    await http.aclose()


# ==================== SCRIPTED SERVICE ====================

class ScriptedIdentityService:
    """
    Stand-in for IdentityServiceClient

    `hold(operation)` returns an event; calls of that operation block
    until it is set. `failures[operation]` is raised by every call of
    that operation until removed.
    """

    def __init__(self):
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.did_status: Dict[str, DIDStatus] = {}
        self.credentials: Dict[str, List[Credential]] = {}
        self.outcomes: Dict[str, VerificationOutcome] = {}
        self.failures: Dict[str, IdentityServiceError] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self._counter = 0

    def hold(self, operation: str) -> asyncio.Event:
        self.gates[operation] = asyncio.Event()
        return self.gates[operation]

    def fail(self, operation: str, message: str) -> None:
        self.failures[operation] = IdentityServiceError(operation, message)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    async def wait_for_call(self, operation: str, count: int = 1) -> None:
        for _ in range(1000):
            if self.count(operation) >= count:
                return
            await asyncio.sleep(0)
        raise AssertionError(f"{operation} was not called {count} time(s)")

    async def _enter(self, operation: str, *args) -> None:
        self.calls.append((operation, args))
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()
        if operation in self.failures:
            raise self.failures[operation]

    async def check_did(self, address: str) -> DIDStatus:
        await self._enter("check_did", address)
        return self.did_status.get(address, DIDStatus(has_did=False))

    async def create_did(self, address: str) -> str:
        await self._enter("create_did", address)
        did = f"did:sui:{address}"
        self.did_status[address] = DIDStatus(has_did=True, did=did)
        return did

    async def list_credentials(self, address: str) -> List[Credential]:
        await self._enter("list_credentials", address)
        return list(self.credentials.get(address, []))

    async def create_credential(self, address: str, data: CredentialData) -> Credential:
        await self._enter("create_credential", address, data)
        self._counter += 1
        credential = Credential(
            id=f"cred-{self._counter}",
            user_address=address,
            credential_data=data,
            issued_at=f"2024-05-0{self._counter}T10:00:00.000Z"
        )
        self.credentials.setdefault(address, []).append(credential)
        return credential

    async def verify_credential(self, address: str, credential_id: str) -> VerificationOutcome:
        await self._enter("verify_credential", address, credential_id)
        return self.outcomes.get(
            credential_id,
            VerificationOutcome(is_valid=True, has_access=True, message="KYC verified")
        )

    async def aclose(self) -> None:
        pass


@pytest.fixture
def service() -> ScriptedIdentityService:
    return ScriptedIdentityService()


@pytest.fixture
def jane_doe() -> CredentialData:
    return CredentialData(
        full_name="Jane Doe",
        date_of_birth="1990-01-01",
        national_id="123-45-6789",
        address="1 Main St"
    )
