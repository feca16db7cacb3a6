"""
Session Controller
==================

State machine driving the identity session of one wallet account.

Phases:
    UNBOUND -> CHECKING -> NO_DID | HAS_DID
    HAS_DID -> FETCHING_CREDENTIALS -> READY

Transitions are looked up in an explicit table; each entry names the
next phase and the follow-up actions (DID check, credential fetch) the
controller runs after applying it.

Concurrency rules:
- At most one request per command kind per account epoch. A second
  command of the same kind raises SessionBusyError; follow-up actions
  scheduled by the state machine coalesce onto the request in flight.
- Every request is stamped with the account epoch it was issued under.
  Responses arriving after the account changed are dropped silently.
"""

import logging
from enum import Enum
from typing import Optional, Dict, Tuple, Set, Union, NamedTuple

import httpx

from .identity_client import IdentityServiceClient, IdentityServiceError
from .models import Credential, CredentialData, SessionPhase, SessionSnapshot, VerificationOutcome
from .session_config import SessionSettings, configure_logging, settings as default_settings
from .session_store import SessionStore

logger = logging.getLogger("SessionController")


class SessionPolicyError(Exception):
    """Command issued in a state that does not allow it. No request was sent."""


class SessionBusyError(SessionPolicyError):
    """A request of the same kind is already outstanding for this account"""


class CommandKind(Enum):
    """Logical remote commands subject to single-flight"""
    CHECK_DID = "check_did"
    CREATE_DID = "create_did"
    FETCH_CREDENTIALS = "fetch_credentials"
    CREATE_CREDENTIAL = "create_credential"
    VERIFY_CREDENTIAL = "verify_credential"


class SessionEvent(Enum):
    ACCOUNT_BOUND = "account_bound"
    ACCOUNT_UNBOUND = "account_unbound"
    CHECK_STARTED = "check_started"
    DID_FOUND = "did_found"
    DID_MISSING = "did_missing"
    DID_CHECK_FAILED = "did_check_failed"
    DID_CREATED = "did_created"
    FETCH_STARTED = "fetch_started"
    CREDENTIALS_LOADED = "credentials_loaded"
    CREDENTIALS_FAILED = "credentials_failed"


class SessionAction(Enum):
    """Follow-up work requested by a transition"""
    CHECK_DID = "check_did"
    FETCH_CREDENTIALS = "fetch_credentials"


class Transition(NamedTuple):
    phase: SessionPhase
    actions: Tuple[SessionAction, ...] = ()


_P = SessionPhase
_E = SessionEvent

TRANSITIONS: Dict[Tuple[SessionPhase, SessionEvent], Transition] = {
    (_P.UNBOUND, _E.ACCOUNT_BOUND): Transition(_P.CHECKING, (SessionAction.CHECK_DID,)),
    (_P.UNBOUND, _E.ACCOUNT_UNBOUND): Transition(_P.UNBOUND),

    (_P.NO_DID, _E.CHECK_STARTED): Transition(_P.CHECKING),
    (_P.HAS_DID, _E.CHECK_STARTED): Transition(_P.CHECKING),
    (_P.FETCHING_CREDENTIALS, _E.CHECK_STARTED): Transition(_P.CHECKING),
    (_P.READY, _E.CHECK_STARTED): Transition(_P.CHECKING),

    (_P.CHECKING, _E.DID_FOUND): Transition(_P.HAS_DID, (SessionAction.FETCH_CREDENTIALS,)),
    (_P.CHECKING, _E.DID_MISSING): Transition(_P.NO_DID),
    (_P.CHECKING, _E.DID_CHECK_FAILED): Transition(_P.NO_DID),

    (_P.CHECKING, _E.DID_CREATED): Transition(_P.HAS_DID, (SessionAction.FETCH_CREDENTIALS,)),
    (_P.NO_DID, _E.DID_CREATED): Transition(_P.HAS_DID, (SessionAction.FETCH_CREDENTIALS,)),

    (_P.HAS_DID, _E.FETCH_STARTED): Transition(_P.FETCHING_CREDENTIALS),
    (_P.READY, _E.FETCH_STARTED): Transition(_P.FETCHING_CREDENTIALS),
    (_P.FETCHING_CREDENTIALS, _E.CREDENTIALS_LOADED): Transition(_P.READY),
    (_P.FETCHING_CREDENTIALS, _E.CREDENTIALS_FAILED): Transition(_P.HAS_DID),
    # fetch that outlived a re-check which confirmed the DID
    (_P.HAS_DID, _E.CREDENTIALS_LOADED): Transition(_P.READY),
    (_P.HAS_DID, _E.CREDENTIALS_FAILED): Transition(_P.HAS_DID),
}


def next_transition(phase: SessionPhase, event: SessionEvent) -> Optional[Transition]:
    """Transition for `event` in `phase`, or None when the event does not apply"""
    return TRANSITIONS.get((phase, event))


class SessionController:
    """
    Orchestrates DID lookup, DID creation, credential issuance and
    credential verification for the connected account

    The controller is the only writer of its SessionStore. Consumers read
    `snapshot` (or subscribe on the store) and call the async commands.
    """

    def __init__(self, client: IdentityServiceClient, store: Optional[SessionStore] = None):
        self._client = client
        self._store = store or SessionStore()
        self._in_flight: Set[Tuple[CommandKind, int]] = set()

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._store.snapshot

    async def aclose(self) -> None:
        await self._client.aclose()

    # ==================== BOOKKEEPING ====================

    def _is_current(self, epoch: int, operation: str) -> bool:
        if epoch == self._store.epoch:
            return True
        logger.debug(f"Dropping {operation} response for superseded account epoch {epoch}")
        return False

    def _next(self, event: SessionEvent, epoch: int) -> Optional[Transition]:
        if not self._is_current(epoch, event.value):
            return None
        phase = self._store.snapshot.phase
        transition = next_transition(phase, event)
        if transition is None:
            logger.warning(f"No transition from {phase.value} on {event.value}; ignored")
        return transition

    def _reserve(self, kind: CommandKind, epoch: int, coalesce: bool = False) -> bool:
        key = (kind, epoch)
        if key in self._in_flight:
            if coalesce:
                logger.debug(f"{kind.value} already in flight; joining it")
                return False
            raise SessionBusyError(f"{kind.value} is already in progress")
        self._in_flight.add(key)
        self._store.set_loading(True, epoch=epoch)
        return True

    def _release(self, kind: CommandKind, epoch: int) -> None:
        self._in_flight.discard((kind, epoch))
        if epoch == self._store.epoch:
            busy = any(e == epoch for _, e in self._in_flight)
            self._store.set_loading(busy, epoch=epoch)

    def _bound(self, command: str) -> Tuple[str, int]:
        account = self._store.account
        if account is None:
            raise SessionPolicyError(f"{command} requires a connected wallet account")
        return account, self._store.epoch

    async def _perform(self, actions: Tuple[SessionAction, ...], account: str, epoch: int) -> None:
        for action in actions:
            if action is SessionAction.CHECK_DID:
                await self._check_did(account, epoch, explicit=False)
            elif action is SessionAction.FETCH_CREDENTIALS:
                await self._fetch_credentials(account, epoch, coalesce=True)

    # ==================== ACCOUNT SIGNAL ====================

    async def set_account(self, account: Optional[str]) -> None:
        """
        Handle a wallet connect, disconnect or account switch

        All state of the previous account is cleared before the DID
        lookup for the new account starts. Returns once the lookup (and
        the credential fetch it may trigger) has settled.
        """
        account = (account or "").strip() or None
        if account == self._store.account:
            return

        event = SessionEvent.ACCOUNT_BOUND if account else SessionEvent.ACCOUNT_UNBOUND
        transition = next_transition(SessionPhase.UNBOUND, event)
        epoch = self._store.set_account(account, phase=transition.phase)
        logger.info(f"Account changed to {account or '<none>'} (epoch {epoch})")
        if account:
            await self._perform(transition.actions, account, epoch)

    # ==================== DID ====================

    async def check_did(self) -> bool:
        """
        Re-run the DID lookup for the current account

        A failed lookup fails closed: DID presence becomes false and the
        error is recorded, whatever was known before.

        Returns:
            DID presence after the lookup
        """
        account, epoch = self._bound("check_did")
        await self._check_did(account, epoch, explicit=True)
        return self._store.snapshot.did_present

    async def _check_did(self, account: str, epoch: int, explicit: bool) -> None:
        if not self._reserve(CommandKind.CHECK_DID, epoch, coalesce=not explicit):
            return
        follow_up: Tuple[SessionAction, ...] = ()
        try:
            if explicit:
                started = self._next(SessionEvent.CHECK_STARTED, epoch)
                if started:
                    self._store.set_phase(started.phase, epoch=epoch)
            try:
                status = await self._client.check_did(account)
            except IdentityServiceError as e:
                transition = self._next(SessionEvent.DID_CHECK_FAILED, epoch)
                if transition:
                    logger.warning(f"DID check failed for {account}: {e.message}")
                    self._store.set_did_presence(False, phase=transition.phase, epoch=epoch)
                    self._store.set_error(e.message, epoch=epoch)
                return

            event = SessionEvent.DID_FOUND if status.has_did else SessionEvent.DID_MISSING
            transition = self._next(event, epoch)
            if transition:
                self._store.set_did_presence(
                    status.has_did, status.did, phase=transition.phase, epoch=epoch
                )
                self._store.set_error(None, epoch=epoch)
                follow_up = transition.actions
        finally:
            self._release(CommandKind.CHECK_DID, epoch)

        await self._perform(follow_up, account, epoch)

    async def create_did(self) -> Optional[str]:
        """
        Register a DID for the current account

        No request is made when a DID is already present. On success the
        credential list is fetched before this call returns. Failures are
        recorded in the snapshot error and leave DID presence false.

        Returns:
            The DID handle, or None when creation failed
        """
        account, epoch = self._bound("create_did")
        snapshot = self._store.snapshot
        if snapshot.did_present:
            logger.info(f"DID already present for {account}; nothing to create")
            return snapshot.did

        self._reserve(CommandKind.CREATE_DID, epoch)
        follow_up: Tuple[SessionAction, ...] = ()
        try:
            try:
                did = await self._client.create_did(account)
            except IdentityServiceError as e:
                if self._is_current(epoch, "create_did"):
                    self._store.set_error(e.message, epoch=epoch)
                return None

            transition = self._next(SessionEvent.DID_CREATED, epoch)
            if transition:
                logger.info(f"DID {did} created for {account}")
                self._store.set_did_presence(True, did, phase=transition.phase, epoch=epoch)
                self._store.set_error(None, epoch=epoch)
                follow_up = transition.actions
        finally:
            self._release(CommandKind.CREATE_DID, epoch)

        await self._perform(follow_up, account, epoch)
        return did

    # ==================== CREDENTIALS ====================

    async def fetch_credentials(self) -> Tuple[Credential, ...]:
        """
        Replace the credential list with the backend's list

        A failed fetch records the error and empties the list.

        Returns:
            The fetched credentials; empty when the fetch failed or was
            superseded by an account change

        Raises:
            SessionPolicyError: No DID, or the current phase does not allow a fetch
            SessionBusyError: A fetch or DID check is already running
        """
        account, epoch = self._bound("fetch_credentials")
        snapshot = self._store.snapshot
        if not snapshot.did_present:
            raise SessionPolicyError("Cannot fetch credentials before a DID is registered")
        if (CommandKind.FETCH_CREDENTIALS, epoch) in self._in_flight:
            raise SessionBusyError(f"{CommandKind.FETCH_CREDENTIALS.value} is already in progress")
        if (CommandKind.CHECK_DID, epoch) in self._in_flight:
            raise SessionBusyError("DID check in progress; credentials cannot be fetched yet")
        if next_transition(snapshot.phase, SessionEvent.FETCH_STARTED) is None:
            raise SessionPolicyError(f"Cannot fetch credentials while {snapshot.phase.value}")
        credentials = await self._fetch_credentials(account, epoch, coalesce=False)
        return credentials or ()

    refetch = fetch_credentials

    async def _fetch_credentials(
        self,
        account: str,
        epoch: int,
        coalesce: bool
    ) -> Optional[Tuple[Credential, ...]]:
        if not self._reserve(CommandKind.FETCH_CREDENTIALS, epoch, coalesce=coalesce):
            return None
        try:
            started = self._next(SessionEvent.FETCH_STARTED, epoch)
            if started is None:
                return None
            self._store.set_phase(started.phase, epoch=epoch)

            try:
                credentials = tuple(await self._client.list_credentials(account))
            except IdentityServiceError as e:
                transition = self._next(SessionEvent.CREDENTIALS_FAILED, epoch)
                if transition:
                    self._store.set_credentials((), phase=transition.phase, epoch=epoch)
                    self._store.set_error(e.message, epoch=epoch)
                return None

            transition = self._next(SessionEvent.CREDENTIALS_LOADED, epoch)
            if transition is None:
                return None
            for credential in credentials:
                if credential.user_address.lower() != account.lower():
                    logger.warning(
                        f"Credential {credential.id} belongs to {credential.user_address}, "
                        f"not {account}"
                    )
            self._store.set_credentials(credentials, phase=transition.phase, epoch=epoch)
            self._store.set_error(None, epoch=epoch)
            logger.info(f"Loaded {len(credentials)} credential(s) for {account}")
            return credentials
        finally:
            self._release(CommandKind.FETCH_CREDENTIALS, epoch)

    async def create_credential(self, data: CredentialData) -> Credential:
        """
        Request a new KYC credential for the current account

        Args:
            data: KYC claims; every field is required

        Returns:
            The issued credential, also appended to the snapshot

        Raises:
            SessionPolicyError: No DID, blank fields, or a creation already running
            IdentityServiceError: Backend or transport failure
        """
        account, epoch = self._bound("create_credential")
        if not self._store.snapshot.did_present:
            raise SessionPolicyError("A DID is required before requesting credentials")
        missing = data.missing_fields()
        if missing:
            raise SessionPolicyError(f"Missing required credential fields: {', '.join(missing)}")

        self._reserve(CommandKind.CREATE_CREDENTIAL, epoch)
        try:
            logger.info(f"Requesting credential for {account}: {data.masked()}")
            try:
                credential = await self._client.create_credential(account, data)
            except IdentityServiceError as e:
                if self._is_current(epoch, "create_credential"):
                    self._store.set_error(e.message, epoch=epoch)
                raise

            if self._is_current(epoch, "create_credential"):
                self._store.append_credential(credential, epoch=epoch)
                self._store.set_error(None, epoch=epoch)
            return credential
        finally:
            self._release(CommandKind.CREATE_CREDENTIAL, epoch)

    # ==================== VERIFICATION ====================

    async def verify_credential(self, credential: Union[str, Credential]) -> VerificationOutcome:
        """
        Verify a credential and check whether it grants access

        Works regardless of DID presence. A failure records the error but
        keeps the previous outcome.

        Args:
            credential: Credential id, or a Credential (its ledger id is
                preferred when anchored)

        Raises:
            SessionPolicyError: No account, empty id, or a verification already running
            IdentityServiceError: Backend or transport failure
        """
        account, epoch = self._bound("verify_credential")
        if isinstance(credential, Credential):
            credential_id = credential.verification_id
        else:
            credential_id = (credential or "").strip()
        if not credential_id:
            raise SessionPolicyError("A credential id is required for verification")

        self._reserve(CommandKind.VERIFY_CREDENTIAL, epoch)
        try:
            try:
                outcome = await self._client.verify_credential(account, credential_id)
            except IdentityServiceError as e:
                if self._is_current(epoch, "verify_credential"):
                    self._store.set_error(e.message, epoch=epoch)
                raise

            if self._is_current(epoch, "verify_credential"):
                self._store.set_verification_outcome(outcome, epoch=epoch)
                self._store.set_error(None, epoch=epoch)
            logger.info(
                f"Credential {credential_id}: valid={outcome.is_valid} access={outcome.has_access}"
            )
            return outcome
        finally:
            self._release(CommandKind.VERIFY_CREDENTIAL, epoch)


def create_session(
    settings: Optional[SessionSettings] = None,
    http_client: Optional[httpx.AsyncClient] = None
) -> SessionController:
    """
    Build a controller wired to the configured identity backend

    Args:
        settings: Configuration, defaults to the KYC_* environment
        http_client: Pre-built httpx client to use instead of creating one
    """
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL)
    client = IdentityServiceClient.from_settings(settings, http_client=http_client)
    return SessionController(client, SessionStore())
