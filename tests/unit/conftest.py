"""In-memory account store used by reconciliation and route tests.

It mirrors the Postgres schema rules the service depends on: unique account
links, foreign keys from accounts to authentications and from sessions to
accounts, ON DELETE CASCADE along both edges, and all-or-nothing
transactions.
"""

from __future__ import annotations

import copy
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, TypeVar

import pytest
from sqlalchemy.exc import IntegrityError

from app.core.db_kernel import run_with_retry, translate_db_error
from app.core.exceptions import BackupServiceError
from app.core.ids import generate_account_id, generate_session_token
from app.models.account import Account
from app.models.authentication import Provider
from app.models.session import UserSession
from app.repositories.account_repository import utcnow
from app.schemas.auth import ProviderIdentity
from app.services.reconciliation import ReconciliationService

_ResultT = TypeVar("_ResultT")

DELETION_PHRASE = "I solemnly swear that I am deleting my account"


def unique_violation(constraint: str) -> IntegrityError:
    return IntegrityError(
        "UPDATE accounts",
        {},
        Exception(f'duplicate key value violates unique constraint "{constraint}"'),
    )


def fk_violation(constraint: str) -> IntegrityError:
    return IntegrityError(
        "INSERT",
        {},
        Exception(f'insert or update violates foreign key constraint "{constraint}"'),
    )


class InMemoryTransaction:
    def __init__(self, store: InMemoryAccountStore) -> None:
        self._store = store
        self.committed = False

    def _maybe_fail(self, method: str) -> None:
        failure = self._store.failures.pop(method, None)
        if failure is not None:
            raise failure

    async def upsert_authentication(self, identity: ProviderIdentity) -> None:
        self._maybe_fail("upsert_authentication")
        rows = self._store.authentications[identity.provider]
        now = utcnow()
        existing = rows.get(identity.provider_user_id)
        values = {
            "access_token": identity.access_token,
            "refresh_token": identity.refresh_token,
            "expires_at": identity.expires_at,
            "scopes": list(identity.scopes),
            "updated_at": now,
        }
        if existing is None:
            rows[identity.provider_user_id] = {**values, "created_at": now}
        else:
            existing.update(values)

    async def find_account_by_identity(
        self,
        provider: Provider,
        provider_user_id: str,
    ) -> Account | None:
        self._maybe_fail("find_account_by_identity")
        if self._store.stale_identity_reads > 0:
            # Simulates a concurrent transaction that has not committed yet.
            self._store.stale_identity_reads -= 1
            return None
        column = f"{provider.value}_user_id"
        for row in self._store.accounts.values():
            if row[column] == provider_user_id:
                return Account(**row)
        return None

    async def get_account(self, account_id: str) -> Account | None:
        row = self._store.accounts.get(account_id)
        return Account(**row) if row is not None else None

    async def get_session(self, session_id: str) -> UserSession | None:
        row = self._store.sessions.get(session_id)
        return UserSession(**row) if row is not None else None

    async def create_account(self) -> Account:
        row = {
            "id": generate_account_id(),
            "spotify_user_id": None,
            "github_user_id": None,
            "created_at": utcnow(),
        }
        self._store.accounts[row["id"]] = row
        return Account(**row)

    async def link_identity(
        self,
        account: Account,
        provider: Provider,
        provider_user_id: str,
    ) -> None:
        self._maybe_fail("link_identity")
        column = f"{provider.value}_user_id"
        if provider_user_id not in self._store.authentications[provider]:
            raise fk_violation(f"fk_accounts_{column}_{provider.value}_authentications")
        for other_id, row in self._store.accounts.items():
            if other_id != account.id and row[column] == provider_user_id:
                raise unique_violation(f"uq_accounts_{column}")
        account.set_linked_user_id(provider, provider_user_id)
        self._store.accounts[account.id][column] = provider_user_id

    async def unlink_identity(self, account: Account, provider: Provider) -> None:
        account.set_linked_user_id(provider, None)
        self._store.accounts[account.id][f"{provider.value}_user_id"] = None

    async def create_session(self, account_id: str) -> UserSession:
        self._maybe_fail("create_session")
        if account_id not in self._store.accounts:
            raise fk_violation("fk_user_sessions_account_id_accounts")
        now = utcnow()
        row = {
            "id": generate_session_token(),
            "account_id": account_id,
            "created_at": now,
            "last_seen_at": now,
        }
        self._store.sessions[row["id"]] = row
        return UserSession(**row)

    async def touch_session(self, session: UserSession) -> None:
        session.last_seen_at = utcnow()
        self._store.sessions[session.id]["last_seen_at"] = session.last_seen_at

    async def delete_session(self, session_id: str) -> str | None:
        row = self._store.sessions.pop(session_id, None)
        return row["account_id"] if row is not None else None

    async def count_sessions(self, account_id: str) -> int:
        return sum(1 for row in self._store.sessions.values() if row["account_id"] == account_id)

    async def delete_authentication(self, provider: Provider, provider_user_id: str) -> int:
        if self._store.authentications[provider].pop(provider_user_id, None) is None:
            return 0
        column = f"{provider.value}_user_id"
        for account_id, row in list(self._store.accounts.items()):
            if row[column] == provider_user_id:
                self._store.cascade_account(account_id)
        return 1

    async def delete_account(self, account_id: str) -> int:
        if account_id not in self._store.accounts:
            return 0
        self._store.cascade_account(account_id)
        return 1

    async def delete_sessions_last_seen_before(self, cutoff: datetime) -> list[str]:
        stale = [
            session_id
            for session_id, row in self._store.sessions.items()
            if row["last_seen_at"] < cutoff
        ]
        return [self._store.sessions.pop(session_id)["account_id"] for session_id in stale]

    async def commit(self) -> None:
        self.committed = True

    async def rollback(self) -> None:
        self.committed = False


class InMemoryAccountStore:
    """Implements ``AccountStoreProtocol`` over plain dictionaries."""

    def __init__(self) -> None:
        self.authentications: dict[Provider, dict[str, dict[str, Any]]] = {
            provider: {} for provider in Provider
        }
        self.accounts: dict[str, dict[str, Any]] = {}
        self.sessions: dict[str, dict[str, Any]] = {}
        self.failures: dict[str, Exception] = {}
        self.operations: list[str] = []
        self.stale_identity_reads = 0

    def fail_once(self, method: str, exc: Exception) -> None:
        """Raise ``exc`` the next time the transaction method ``method`` runs."""
        self.failures[method] = exc

    def cascade_account(self, account_id: str) -> None:
        self.accounts.pop(account_id, None)
        for session_id, row in list(self.sessions.items()):
            if row["account_id"] == account_id:
                del self.sessions[session_id]

    def account_for_session(self, session_id: str) -> dict[str, Any] | None:
        row = self.sessions.get(session_id)
        return self.accounts.get(row["account_id"]) if row is not None else None

    def _snapshot(self) -> tuple[Any, Any, Any]:
        return copy.deepcopy((self.authentications, self.accounts, self.sessions))

    def _restore(self, snapshot: tuple[Any, Any, Any]) -> None:
        self.authentications, self.accounts, self.sessions = snapshot

    @asynccontextmanager
    async def begin(self, *, operation_name: str) -> AsyncGenerator[InMemoryTransaction, None]:
        self.operations.append(operation_name)
        snapshot = self._snapshot()
        txn = InMemoryTransaction(self)
        try:
            yield txn
        except BackupServiceError:
            self._restore(snapshot)
            raise
        except Exception as exc:
            self._restore(snapshot)
            translated = translate_db_error(exc)
            if translated is exc:
                raise
            raise translated from exc
        if not txn.committed:
            self._restore(snapshot)

    async def run(
        self,
        fn: Callable[[InMemoryTransaction], Awaitable[_ResultT]],
        *,
        operation_name: str,
        attempts: int = 1,
    ) -> _ResultT:
        async def _once() -> _ResultT:
            async with self.begin(operation_name=operation_name) as txn:
                result = await fn(txn)
                await txn.commit()
            return result

        return await run_with_retry(
            _once,
            operation_name=operation_name,
            attempts=attempts,
            base_delay_seconds=0.0,
        )


def make_identity(provider: Provider, user_id: str, token: str = "token") -> ProviderIdentity:
    return ProviderIdentity(
        provider=provider,
        provider_user_id=user_id,
        access_token=f"{token}-{provider.value}-{user_id}",
        scopes=["scope-a"],
    )


@pytest.fixture
def account_store() -> InMemoryAccountStore:
    return InMemoryAccountStore()


@pytest.fixture
def reconciliation_service(account_store: InMemoryAccountStore) -> ReconciliationService:
    return ReconciliationService(account_store, deletion_phrase=DELETION_PHRASE)


@pytest.fixture
def identity_factory() -> Callable[..., ProviderIdentity]:
    return make_identity
