"""Repository for accounts, provider authentications and sessions.

All reconciliation work happens through an ``AccountTransaction`` obtained
from ``AccountRepository.begin()`` (or ``run()``), so every read that informs
a later write uses the same connection and transaction.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Protocol, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import Insert, insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import Database
from app.core.db_kernel import db_transaction, run_with_retry
from app.core.ids import generate_account_id, generate_session_token
from app.models.account import Account
from app.models.authentication import Provider, authentication_model_for
from app.models.session import UserSession
from app.schemas.auth import ProviderIdentity

logger = logging.getLogger(__name__)

_ResultT = TypeVar("_ResultT")

# Columns refreshed on a repeat login; created_at is deliberately absent.
AUTHENTICATION_MUTABLE_COLUMNS = ("access_token", "refresh_token", "expires_at", "scopes")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountTransactionProtocol(Protocol):
    """Operations available inside one reconciliation transaction."""

    async def upsert_authentication(self, identity: ProviderIdentity) -> None: ...

    async def find_account_by_identity(
        self, provider: Provider, provider_user_id: str
    ) -> Account | None: ...

    async def get_account(self, account_id: str) -> Account | None: ...

    async def get_session(self, session_id: str) -> UserSession | None: ...

    async def create_account(self) -> Account: ...

    async def link_identity(
        self, account: Account, provider: Provider, provider_user_id: str
    ) -> None: ...

    async def unlink_identity(self, account: Account, provider: Provider) -> None: ...

    async def create_session(self, account_id: str) -> UserSession: ...

    async def touch_session(self, session: UserSession) -> None: ...

    async def delete_session(self, session_id: str) -> str | None: ...

    async def count_sessions(self, account_id: str) -> int: ...

    async def delete_authentication(self, provider: Provider, provider_user_id: str) -> int: ...

    async def delete_account(self, account_id: str) -> int: ...

    async def delete_sessions_last_seen_before(self, cutoff: datetime) -> list[str]: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


class AccountStoreProtocol(Protocol):
    """Entry point handing out transactions."""

    def begin(
        self, *, operation_name: str
    ) -> AbstractAsyncContextManager[AccountTransactionProtocol]: ...

    async def run(
        self,
        fn: Callable[[AccountTransactionProtocol], Awaitable[_ResultT]],
        *,
        operation_name: str,
        attempts: int = 1,
    ) -> _ResultT: ...


def build_authentication_upsert(identity: ProviderIdentity) -> Insert:
    """INSERT ... ON CONFLICT (user_id) DO UPDATE for a provider identity."""
    model = authentication_model_for(identity.provider)
    now = utcnow()
    stmt = insert(model).values(
        user_id=identity.provider_user_id,
        access_token=identity.access_token,
        refresh_token=identity.refresh_token,
        expires_at=identity.expires_at,
        scopes=list(identity.scopes),
        created_at=now,
        updated_at=now,
    )
    updates: dict[str, Any] = {
        column: getattr(stmt.excluded, column) for column in AUTHENTICATION_MUTABLE_COLUMNS
    }
    updates["updated_at"] = func.now()
    return stmt.on_conflict_do_update(index_elements=[model.user_id], set_=updates)


class AccountTransaction:
    """SQLAlchemy-backed transaction handle."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert_authentication(self, identity: ProviderIdentity) -> None:
        await self._session.execute(build_authentication_upsert(identity))

    async def find_account_by_identity(
        self,
        provider: Provider,
        provider_user_id: str,
    ) -> Account | None:
        column = getattr(Account, f"{provider.value}_user_id")
        result = await self._session.execute(
            select(Account).where(column == provider_user_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_account(self, account_id: str) -> Account | None:
        result = await self._session.execute(
            select(Account).where(Account.id == account_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_session(self, session_id: str) -> UserSession | None:
        result = await self._session.execute(
            select(UserSession).where(UserSession.id == session_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def create_account(self) -> Account:
        account = Account(id=generate_account_id(), created_at=utcnow())
        self._session.add(account)
        await self._session.flush()
        return account

    async def link_identity(
        self,
        account: Account,
        provider: Provider,
        provider_user_id: str,
    ) -> None:
        account.set_linked_user_id(provider, provider_user_id)
        # Flush now so a uniqueness violation surfaces inside this step.
        await self._session.flush()

    async def unlink_identity(self, account: Account, provider: Provider) -> None:
        account.set_linked_user_id(provider, None)
        await self._session.flush()

    async def create_session(self, account_id: str) -> UserSession:
        now = utcnow()
        user_session = UserSession(
            id=generate_session_token(),
            account_id=account_id,
            created_at=now,
            last_seen_at=now,
        )
        self._session.add(user_session)
        await self._session.flush()
        return user_session

    async def touch_session(self, session: UserSession) -> None:
        session.last_seen_at = utcnow()
        await self._session.flush()

    async def delete_session(self, session_id: str) -> str | None:
        result = await self._session.execute(
            delete(UserSession)
            .where(UserSession.id == session_id)
            .returning(UserSession.account_id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def count_sessions(self, account_id: str) -> int:
        result = await self._session.execute(
            select(func.count()).select_from(UserSession).where(UserSession.account_id == account_id)
        )
        return int(result.scalar_one())

    async def delete_authentication(self, provider: Provider, provider_user_id: str) -> int:
        model = authentication_model_for(provider)
        result = await self._session.execute(
            delete(model)
            .where(model.user_id == provider_user_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def delete_account(self, account_id: str) -> int:
        result = await self._session.execute(
            delete(Account)
            .where(Account.id == account_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def delete_sessions_last_seen_before(self, cutoff: datetime) -> list[str]:
        result = await self._session.execute(
            delete(UserSession)
            .where(UserSession.last_seen_at < cutoff)
            .returning(UserSession.account_id)
            .execution_options(synchronize_session=False)
        )
        return list(result.scalars().all())

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


class AccountRepository:
    """Hands out ``AccountTransaction`` handles over short-lived sessions."""

    def __init__(self, database: Database) -> None:
        self._database = database

    @asynccontextmanager
    async def begin(self, *, operation_name: str) -> AsyncGenerator[AccountTransaction, None]:
        """Open a transaction; it is rolled back unless ``commit()`` is called."""
        async with db_transaction(self._database, operation_name=operation_name) as session:
            yield AccountTransaction(session)

    async def run(
        self,
        fn: Callable[[AccountTransaction], Awaitable[_ResultT]],
        *,
        operation_name: str,
        attempts: int = 1,
    ) -> _ResultT:
        """Run ``fn`` in one transaction and commit it, retrying transient failures."""

        async def _once() -> _ResultT:
            async with self.begin(operation_name=operation_name) as txn:
                result = await fn(txn)
                await txn.commit()
            return result

        return await run_with_retry(_once, operation_name=operation_name, attempts=attempts)
