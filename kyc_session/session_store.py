"""
Session State Store
===================

Single-writer holder of the current SessionSnapshot.

Consumers read `snapshot` or subscribe to change notifications; only the
session controller calls the mutation methods. Every mutation replaces
the snapshot as a whole, so a reader never observes a half-applied
update. Mutations never raise: a mutation stamped with an account epoch
that is no longer current is ignored and logged at DEBUG; a mutation
that breaks the DID gate is ignored and logged as a warning.
"""

import logging
from dataclasses import replace
from typing import Optional, Callable, List, Iterable

from .models import SessionSnapshot, SessionPhase, Credential, VerificationOutcome

logger = logging.getLogger("SessionStore")

Listener = Callable[[SessionSnapshot], None]


class SessionStore:
    """Owns the session snapshot and all of its mutation"""

    def __init__(self):
        self._snapshot = SessionSnapshot()
        self._listeners: List[Listener] = []

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def account(self) -> Optional[str]:
        return self._snapshot.account

    @property
    def epoch(self) -> int:
        return self._snapshot.epoch

    # ==================== NOTIFICATIONS ====================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener called with every new snapshot

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, snapshot: SessionSnapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")

    def _is_current(self, epoch: Optional[int], mutation: str) -> bool:
        if epoch is None or epoch == self._snapshot.epoch:
            return True
        logger.debug(
            f"Ignoring {mutation} for stale account epoch {epoch} "
            f"(current epoch {self._snapshot.epoch})"
        )
        return False

    # ==================== MUTATIONS ====================

    def set_account(
        self,
        account: Optional[str],
        phase: SessionPhase = SessionPhase.UNBOUND
    ) -> int:
        """
        Switch to a new account identity

        Clears every account-scoped field in one step and starts a new
        epoch.

        Args:
            account: New account identity, None when the wallet disconnects
            phase: Phase the controller enters for the new account

        Returns:
            The new epoch
        """
        epoch = self._snapshot.epoch + 1
        self._commit(SessionSnapshot(account=account, phase=phase, epoch=epoch))
        return epoch

    def set_phase(self, phase: SessionPhase, epoch: Optional[int] = None) -> bool:
        if not self._is_current(epoch, "set_phase"):
            return False
        self._commit(replace(self._snapshot, phase=phase))
        return True

    def set_did_presence(
        self,
        present: bool,
        did: Optional[str] = None,
        phase: Optional[SessionPhase] = None,
        epoch: Optional[int] = None
    ) -> bool:
        """Record DID presence; absence also drops the DID-gated credential list"""
        if not self._is_current(epoch, "set_did_presence"):
            return False
        phase = phase or self._snapshot.phase
        if present:
            snapshot = replace(
                self._snapshot, did_present=True, did=did or self._snapshot.did, phase=phase
            )
        else:
            snapshot = replace(
                self._snapshot, did_present=False, did=None, credentials=(), phase=phase
            )
        self._commit(snapshot)
        return True

    def set_credentials(
        self,
        credentials: Iterable[Credential],
        phase: Optional[SessionPhase] = None,
        epoch: Optional[int] = None
    ) -> bool:
        """Replace the credential list wholesale"""
        if not self._is_current(epoch, "set_credentials"):
            return False
        credentials = tuple(credentials)
        if credentials and not self._snapshot.did_present:
            logger.warning("Ignoring set_credentials while no DID is present")
            return False
        self._commit(replace(
            self._snapshot, credentials=credentials, phase=phase or self._snapshot.phase
        ))
        return True

    def append_credential(self, credential: Credential, epoch: Optional[int] = None) -> bool:
        if not self._is_current(epoch, "append_credential"):
            return False
        if not self._snapshot.did_present:
            logger.warning("Ignoring append_credential while no DID is present")
            return False
        self._commit(replace(self._snapshot, credentials=self._snapshot.credentials + (credential,)))
        return True

    def set_verification_outcome(
        self,
        outcome: Optional[VerificationOutcome],
        epoch: Optional[int] = None
    ) -> bool:
        if not self._is_current(epoch, "set_verification_outcome"):
            return False
        self._commit(replace(self._snapshot, verification=outcome))
        return True

    def set_loading(self, loading: bool, epoch: Optional[int] = None) -> bool:
        if not self._is_current(epoch, "set_loading"):
            return False
        if loading != self._snapshot.loading:
            self._commit(replace(self._snapshot, loading=loading))
        return True

    def set_error(self, error: Optional[str], epoch: Optional[int] = None) -> bool:
        if not self._is_current(epoch, "set_error"):
            return False
        if error != self._snapshot.error:
            self._commit(replace(self._snapshot, error=error))
        return True
