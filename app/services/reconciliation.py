"""Account reconciliation: map provider logins onto exactly one account.

Every public operation runs inside a single repository transaction. Reads
that decide a later write (does this identity already belong to an account?
which account does this session point at?) happen on that same transaction,
and the unique constraints on ``accounts.spotify_user_id`` /
``accounts.github_user_id`` settle the remaining race between concurrent
first logins: the loser gets ``IdentityConflictError``.

Policy when a login moves a browser from one account to another: the account
that already owns the provider identity wins. The browser's previous session
is deleted after the new one exists, and its account is garbage-collected if
it is incomplete and has no sessions left.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TypeVar

from app.config import DEFAULT_DELETION_PHRASE
from app.core.db_kernel import ConflictError, DbKernelError
from app.core.exceptions import (
    AccountNotFoundError,
    DeletionConfirmationError,
    IdentityConflictError,
    InternalServiceError,
)
from app.core.ids import looks_like_session_token
from app.core.logging import session_log_id
from app.models.account import IDENTITY_LINK_CONSTRAINTS, Account, AccountState
from app.models.authentication import Provider
from app.models.session import UserSession
from app.repositories.account_repository import (
    AccountStoreProtocol,
    AccountTransactionProtocol,
)
from app.schemas.auth import ProviderIdentity

logger = logging.getLogger(__name__)

_ResultT = TypeVar("_ResultT")


@dataclass(frozen=True)
class AccountSnapshot:
    """Detached, read-only view of an account row."""

    id: str
    created_at: datetime | None
    spotify_user_id: str | None
    github_user_id: str | None

    @classmethod
    def from_account(cls, account: Account) -> AccountSnapshot:
        return cls(
            id=account.id,
            created_at=account.created_at,
            spotify_user_id=account.spotify_user_id,
            github_user_id=account.github_user_id,
        )

    def linked_user_id(self, provider: Provider) -> str | None:
        return getattr(self, f"{provider.value}_user_id")

    @property
    def is_complete(self) -> bool:
        return self.spotify_user_id is not None and self.github_user_id is not None

    @property
    def state(self) -> AccountState:
        return AccountState.COMPLETE if self.is_complete else AccountState.INCOMPLETE


@dataclass(frozen=True)
class CurrentUser:
    """A resolved session and the account it belongs to."""

    session_id: str
    account: AccountSnapshot


@dataclass(frozen=True)
class LoginResult:
    session_id: str
    account: AccountSnapshot
    account_created: bool
    session_created: bool
    previous_account_deleted: bool = False


@dataclass(frozen=True)
class LogoutResult:
    session_deleted: bool
    account_id: str | None = None
    account_deleted: bool = False


@dataclass(frozen=True)
class PruneResult:
    sessions_deleted: int
    accounts_deleted: tuple[str, ...]


class ReconciliationService:
    """Login, logout and deletion flows over an ``AccountStoreProtocol``."""

    def __init__(
        self,
        repository: AccountStoreProtocol,
        *,
        deletion_phrase: str = DEFAULT_DELETION_PHRASE,
        login_attempts: int = 2,
        maintenance_attempts: int = 3,
    ) -> None:
        self._repository = repository
        self._deletion_phrase = deletion_phrase
        self._login_attempts = login_attempts
        self._maintenance_attempts = maintenance_attempts

    async def _run(
        self,
        fn: Callable[[AccountTransactionProtocol], Awaitable[_ResultT]],
        *,
        operation_name: str,
        attempts: int = 1,
        log_context: dict[str, object] | None = None,
        reraise_conflicts: bool = False,
    ) -> _ResultT:
        context = dict(log_context or {})
        try:
            return await self._repository.run(fn, operation_name=operation_name, attempts=attempts)
        except ConflictError:
            if reraise_conflicts:
                raise
            logger.error(
                "Unexpected constraint violation",
                extra={**context, "operation": operation_name},
            )
            raise InternalServiceError(operation_name, "constraint violation") from None
        except DbKernelError as exc:
            logger.error(
                "Account operation failed",
                extra={
                    **context,
                    "operation": operation_name,
                    "failure_class": type(exc).__name__,
                },
            )
            raise InternalServiceError(operation_name, str(exc)) from exc

    # Login

    async def login_via_provider(
        self,
        existing_session_id: str | None,
        identity: ProviderIdentity,
    ) -> LoginResult:
        """Reconcile a freshly completed OAuth login into one account + session."""
        log_context: dict[str, object] = {
            "provider": identity.provider.value,
            "provider_user_id": identity.provider_user_id,
            "session": session_log_id(existing_session_id),
        }
        session_id = existing_session_id if looks_like_session_token(existing_session_id) else None

        async def _login(txn: AccountTransactionProtocol) -> LoginResult:
            return await self._login(txn, session_id, identity)

        try:
            result = await self._run(
                _login,
                operation_name="login_via_provider",
                attempts=self._login_attempts,
                log_context=log_context,
                reraise_conflicts=True,
            )
        except ConflictError as exc:
            if exc.constraint not in IDENTITY_LINK_CONSTRAINTS:
                logger.error(
                    "Unexpected constraint violation",
                    extra={
                        **log_context,
                        "operation": "login_via_provider",
                        "constraint": exc.constraint,
                    },
                )
                raise InternalServiceError("login_via_provider", "constraint violation") from None
            logger.warning("Provider identity already claimed", extra=log_context)
            raise IdentityConflictError(
                identity.provider.value,
                identity.provider_user_id,
            ) from exc

        logger.info(
            "Login reconciled",
            extra={
                **log_context,
                "account_id": result.account.id,
                "account_state": result.account.state.value,
                "account_created": result.account_created,
                "session_created": result.session_created,
                "previous_account_deleted": result.previous_account_deleted,
            },
        )
        return result

    async def _login(
        self,
        txn: AccountTransactionProtocol,
        session_id: str | None,
        identity: ProviderIdentity,
    ) -> LoginResult:
        provider = identity.provider
        provider_user_id = identity.provider_user_id

        await txn.upsert_authentication(identity)

        current: UserSession | None = None
        if session_id is not None:
            current = await txn.get_session(session_id)

        account_created = False
        account = await txn.find_account_by_identity(provider, provider_user_id)
        if account is None and current is not None:
            account = await txn.get_account(current.account_id)
            if account is not None:
                replaced = account.linked_user_id(provider)
                await txn.link_identity(account, provider, provider_user_id)
                if replaced is not None and replaced != provider_user_id:
                    # Nothing links the replaced identity any more; drop its tokens.
                    await txn.delete_authentication(provider, replaced)
                    logger.info(
                        "Replaced provider identity on account",
                        extra={
                            "account_id": account.id,
                            "provider": provider.value,
                            "previous_user_id": replaced,
                            "provider_user_id": provider_user_id,
                        },
                    )
        if account is None:
            account = await txn.create_account()
            await txn.link_identity(account, provider, provider_user_id)
            account_created = True

        if current is not None and current.account_id == account.id:
            await txn.touch_session(current)
            return LoginResult(
                session_id=current.id,
                account=AccountSnapshot.from_account(account),
                account_created=account_created,
                session_created=False,
            )

        new_session = await txn.create_session(account.id)

        previous_account_deleted = False
        if current is not None:
            previous_account_id = current.account_id
            await txn.delete_session(current.id)
            previous_account_deleted = await self._collect_if_abandoned(txn, previous_account_id)

        return LoginResult(
            session_id=new_session.id,
            account=AccountSnapshot.from_account(account),
            account_created=account_created,
            session_created=True,
            previous_account_deleted=previous_account_deleted,
        )

    # Logout and deletion

    async def logout(self, session_id: str | None) -> LogoutResult:
        """Delete a session; drop its account too if that leaves an abandoned signup."""
        if session_id is None or not looks_like_session_token(session_id):
            return LogoutResult(session_deleted=False)

        async def _logout(txn: AccountTransactionProtocol) -> LogoutResult:
            account_id = await txn.delete_session(session_id)
            if account_id is None:
                return LogoutResult(session_deleted=False)
            account_deleted = await self._collect_if_abandoned(txn, account_id)
            return LogoutResult(
                session_deleted=True,
                account_id=account_id,
                account_deleted=account_deleted,
            )

        result = await self._run(
            _logout,
            operation_name="logout",
            log_context={"session": session_log_id(session_id)},
        )
        if result.session_deleted:
            logger.info(
                "Session logged out",
                extra={
                    "session": session_log_id(session_id),
                    "account_id": result.account_id,
                    "account_deleted": result.account_deleted,
                },
            )
        return result

    async def delete_account(self, account_id: str, confirmation: str) -> bool:
        """Delete an account and everything hanging off it.

        Returns False (and logs a warning) when nothing was deleted, e.g. a
        second delete of an account that is already gone.
        """
        if confirmation.strip() != self._deletion_phrase:
            raise DeletionConfirmationError()

        async def _delete(txn: AccountTransactionProtocol) -> int:
            account = await txn.get_account(account_id)
            if account is None:
                return 0
            return await self._purge_account(txn, account)

        affected = await self._run(
            _delete,
            operation_name="delete_account",
            log_context={"account_id": account_id},
        )
        if affected == 0:
            logger.warning(
                "Account deletion affected no rows",
                extra={"account_id": account_id},
            )
            return False

        logger.info("Account deleted", extra={"account_id": account_id})
        return True

    async def unlink_provider(self, account_id: str, provider: Provider) -> AccountSnapshot:
        """Remove one provider identity from an account without deleting it."""

        async def _unlink(txn: AccountTransactionProtocol) -> AccountSnapshot:
            account = await txn.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            unlinked = account.linked_user_id(provider)
            if unlinked is not None:
                await txn.unlink_identity(account, provider)
                await txn.delete_authentication(provider, unlinked)
            return AccountSnapshot.from_account(account)

        snapshot = await self._run(
            _unlink,
            operation_name="unlink_provider",
            log_context={"account_id": account_id, "provider": provider.value},
        )
        logger.info(
            "Provider unlinked",
            extra={
                "account_id": account_id,
                "provider": provider.value,
                "account_state": snapshot.state.value,
            },
        )
        return snapshot

    # Session lookup and maintenance

    async def resolve_session(self, session_id: str | None) -> CurrentUser | None:
        """Return the session's account and bump ``last_seen_at``; None when anonymous."""
        if session_id is None or not looks_like_session_token(session_id):
            return None

        async def _resolve(txn: AccountTransactionProtocol) -> CurrentUser | None:
            user_session = await txn.get_session(session_id)
            if user_session is None:
                return None
            account = await txn.get_account(user_session.account_id)
            if account is None:
                return None
            await txn.touch_session(user_session)
            return CurrentUser(
                session_id=user_session.id,
                account=AccountSnapshot.from_account(account),
            )

        current = await self._run(
            _resolve,
            operation_name="resolve_session",
            log_context={"session": session_log_id(session_id)},
        )
        if current is None:
            logger.debug("Unknown session treated as anonymous", extra={"session": session_log_id(session_id)})
        return current

    async def prune_stale_sessions(
        self,
        max_age: timedelta,
        *,
        now: datetime | None = None,
    ) -> PruneResult:
        """Delete sessions idle longer than ``max_age`` and collect abandoned signups."""
        cutoff = (now or datetime.now(timezone.utc)) - max_age

        async def _prune(txn: AccountTransactionProtocol) -> PruneResult:
            owners = await txn.delete_sessions_last_seen_before(cutoff)
            deleted: list[str] = []
            for account_id in sorted(set(owners)):
                if await self._collect_if_abandoned(txn, account_id):
                    deleted.append(account_id)
            return PruneResult(sessions_deleted=len(owners), accounts_deleted=tuple(deleted))

        result = await self._run(
            _prune,
            operation_name="prune_stale_sessions",
            attempts=self._maintenance_attempts,
            log_context={"cutoff": cutoff.isoformat()},
        )
        logger.info(
            "Stale sessions pruned",
            extra={
                "cutoff": cutoff.isoformat(),
                "sessions_deleted": result.sessions_deleted,
                "accounts_deleted": len(result.accounts_deleted),
            },
        )
        return result

    # Helpers

    async def _collect_if_abandoned(
        self,
        txn: AccountTransactionProtocol,
        account_id: str,
    ) -> bool:
        """Delete an incomplete account that no longer has any session."""
        if await txn.count_sessions(account_id) > 0:
            return False
        account = await txn.get_account(account_id)
        if account is None or account.is_complete:
            return False
        await self._purge_account(txn, account)
        logger.info("Abandoned incomplete account removed", extra={"account_id": account_id})
        return True

    async def _purge_account(self, txn: AccountTransactionProtocol, account: Account) -> int:
        """Delete the account through its root identity, then the other identity.

        Deleting the Spotify authentication cascades to the account and its
        sessions. Accounts without a Spotify link fall back to the GitHub
        link, and accounts with no link at all are deleted directly.
        """
        spotify_user_id = account.spotify_user_id
        github_user_id = account.github_user_id

        if spotify_user_id is not None:
            affected = await txn.delete_authentication(Provider.SPOTIFY, spotify_user_id)
            if github_user_id is not None:
                await txn.delete_authentication(Provider.GITHUB, github_user_id)
            return affected
        if github_user_id is not None:
            return await txn.delete_authentication(Provider.GITHUB, github_user_id)
        return await txn.delete_account(account.id)
