"""Unit tests for account reconciliation (login, logout, deletion)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from app.core.exceptions import (
    AccountNotFoundError,
    DeletionConfirmationError,
    ErrorKind,
    IdentityConflictError,
    InternalServiceError,
)
from app.models.account import AccountState
from app.models.authentication import Provider
from app.services.reconciliation import ReconciliationService

from conftest import DELETION_PHRASE, InMemoryAccountStore, fk_violation, make_identity

SPOTIFY = Provider.SPOTIFY
GITHUB = Provider.GITHUB


def _assert_sessions_reference_accounts(store: InMemoryAccountStore) -> None:
    for row in store.sessions.values():
        assert row["account_id"] in store.accounts


@pytest.mark.asyncio
async def test_first_login_creates_incomplete_account_and_session(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    result = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "alice"))

    assert result.account_created is True
    assert result.session_created is True
    assert result.account.spotify_user_id == "alice"
    assert result.account.github_user_id is None
    assert result.account.state is AccountState.INCOMPLETE
    assert account_store.sessions[result.session_id]["account_id"] == result.account.id
    assert "alice" in account_store.authentications[SPOTIFY]


@pytest.mark.asyncio
async def test_repeat_login_without_session_reuses_account(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    first = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "alice"))
    second = await reconciliation_service.login_via_provider(
        None, make_identity(SPOTIFY, "alice", token="rotated")
    )

    assert second.account.id == first.account.id
    assert second.account_created is False
    assert second.session_id != first.session_id
    assert len(account_store.accounts) == 1
    assert len(account_store.authentications[SPOTIFY]) == 1


@pytest.mark.asyncio
async def test_repeat_login_refreshes_tokens_and_keeps_created_at(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "alice"))
    created_at = account_store.authentications[SPOTIFY]["alice"]["created_at"]

    await reconciliation_service.login_via_provider(
        None, make_identity(SPOTIFY, "alice", token="rotated")
    )

    row = account_store.authentications[SPOTIFY]["alice"]
    assert row["access_token"] == "rotated-spotify-alice"
    assert row["created_at"] == created_at
    assert row["updated_at"] >= created_at


@pytest.mark.asyncio
async def test_login_with_current_session_of_same_account_reuses_session(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    first = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "alice"))

    again = await reconciliation_service.login_via_provider(
        first.session_id, make_identity(SPOTIFY, "alice")
    )

    assert again.session_id == first.session_id
    assert again.session_created is False
    assert len(account_store.sessions) == 1


@pytest.mark.asyncio
async def test_second_provider_completes_account_on_current_session(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    first = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "alice"))

    second = await reconciliation_service.login_via_provider(
        first.session_id, make_identity(GITHUB, "alice-gh")
    )

    assert second.account.id == first.account.id
    assert second.account.state is AccountState.COMPLETE
    assert second.session_id == first.session_id
    assert account_store.accounts[first.account.id]["github_user_id"] == "alice-gh"


@pytest.mark.asyncio
async def test_login_with_unknown_session_cookie_is_treated_as_anonymous(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    result = await reconciliation_service.login_via_provider(
        "x" * 43, make_identity(SPOTIFY, "alice")
    )

    assert result.account_created is True
    assert list(account_store.sessions) == [result.session_id]


@pytest.mark.asyncio
async def test_login_swaps_identity_on_incomplete_account(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    first = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "alice"))

    swapped = await reconciliation_service.login_via_provider(
        first.session_id, make_identity(SPOTIFY, "alice-two")
    )

    assert swapped.account.id == first.account.id
    assert swapped.account.spotify_user_id == "alice-two"
    assert swapped.account.state is AccountState.INCOMPLETE
    assert list(account_store.authentications[SPOTIFY]) == ["alice-two"]


@pytest.mark.asyncio
async def test_logout_after_swap_leaves_no_authentication_rows(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    first = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "alice"))
    await reconciliation_service.login_via_provider(
        first.session_id, make_identity(SPOTIFY, "alice-two")
    )

    result = await reconciliation_service.logout(first.session_id)

    assert result.account_deleted is True
    assert account_store.accounts == {}
    assert account_store.authentications[SPOTIFY] == {}
    assert account_store.authentications[GITHUB] == {}


@pytest.mark.asyncio
async def test_login_as_identity_owned_elsewhere_moves_browser_and_collects_old_account(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    owner = await reconciliation_service.login_via_provider(None, make_identity(GITHUB, "bob-gh"))
    stray = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "bob"))
    assert owner.account.id != stray.account.id

    moved = await reconciliation_service.login_via_provider(
        stray.session_id, make_identity(GITHUB, "bob-gh")
    )

    assert moved.account.id == owner.account.id
    assert moved.session_created is True
    assert moved.previous_account_deleted is True
    assert stray.account.id not in account_store.accounts
    assert stray.session_id not in account_store.sessions
    assert "bob" not in account_store.authentications[SPOTIFY]
    _assert_sessions_reference_accounts(account_store)


@pytest.mark.asyncio
async def test_moving_browser_keeps_previous_complete_account(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    first = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "carol"))
    await reconciliation_service.login_via_provider(first.session_id, make_identity(GITHUB, "carol-gh"))
    other = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "dave"))

    moved = await reconciliation_service.login_via_provider(
        first.session_id, make_identity(SPOTIFY, "dave")
    )

    assert moved.account.id == other.account.id
    assert moved.previous_account_deleted is False
    assert account_store.accounts[first.account.id]["github_user_id"] == "carol-gh"
    assert first.session_id not in account_store.sessions


@pytest.mark.asyncio
async def test_concurrent_claim_surfaces_identity_conflict_and_rolls_back(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    winner = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "erin"))
    account_store.stale_identity_reads = 1

    with pytest.raises(IdentityConflictError) as exc_info:
        await reconciliation_service.login_via_provider(
            None, make_identity(SPOTIFY, "erin", token="loser")
        )

    assert exc_info.value.details == {"provider": "spotify", "provider_user_id": "erin"}
    assert list(account_store.accounts) == [winner.account.id]
    assert list(account_store.sessions) == [winner.session_id]
    assert account_store.authentications[SPOTIFY]["erin"]["access_token"] == "token-spotify-erin"


@pytest.mark.asyncio
async def test_non_identity_constraint_violation_is_internal(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    account_store.fail_once(
        "create_session",
        fk_violation("fk_user_sessions_account_id_accounts"),
    )

    with pytest.raises(InternalServiceError) as exc_info:
        await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "zed"))

    assert exc_info.value.kind is ErrorKind.INTERNAL
    assert account_store.operations == ["login_via_provider"]
    assert account_store.accounts == {}
    assert account_store.authentications[SPOTIFY] == {}


@pytest.mark.asyncio
async def test_login_retries_transient_failure(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    account_store.fail_once(
        "create_session",
        OperationalError("INSERT INTO user_sessions", {}, Exception("connection is closed")),
    )

    result = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "frank"))

    assert account_store.operations == ["login_via_provider", "login_via_provider"]
    assert len(account_store.accounts) == 1
    assert list(account_store.sessions) == [result.session_id]


@pytest.mark.asyncio
async def test_login_failure_leaves_no_partial_rows(account_store: InMemoryAccountStore) -> None:
    service = ReconciliationService(account_store, login_attempts=1)
    account_store.fail_once(
        "create_session",
        OperationalError("INSERT INTO user_sessions", {}, Exception("connection is closed")),
    )

    with pytest.raises(InternalServiceError):
        await service.login_via_provider(None, make_identity(SPOTIFY, "gina"))

    assert account_store.accounts == {}
    assert account_store.sessions == {}
    assert account_store.authentications[SPOTIFY] == {}


@pytest.mark.asyncio
async def test_logout_removes_abandoned_incomplete_account(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    login = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "hank"))

    result = await reconciliation_service.logout(login.session_id)

    assert result.session_deleted is True
    assert result.account_deleted is True
    assert account_store.accounts == {}
    assert account_store.authentications[SPOTIFY] == {}


@pytest.mark.asyncio
async def test_logout_keeps_incomplete_account_with_other_sessions(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    first = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "ivy"))
    second = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "ivy"))

    result = await reconciliation_service.logout(first.session_id)

    assert result.account_deleted is False
    assert first.account.id in account_store.accounts
    assert list(account_store.sessions) == [second.session_id]


@pytest.mark.asyncio
async def test_logout_keeps_complete_account(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    login = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "jack"))
    await reconciliation_service.login_via_provider(login.session_id, make_identity(GITHUB, "jack-gh"))

    result = await reconciliation_service.logout(login.session_id)

    assert result.session_deleted is True
    assert result.account_deleted is False
    assert account_store.accounts[login.account.id]["spotify_user_id"] == "jack"
    assert account_store.sessions == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("session_id", [None, "", "short", "y" * 43])
async def test_logout_without_known_session_is_noop(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
    session_id: str | None,
) -> None:
    result = await reconciliation_service.logout(session_id)

    assert result.session_deleted is False
    assert result.account_deleted is False


@pytest.mark.asyncio
async def test_logout_twice_is_idempotent(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    login = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "kim"))
    await reconciliation_service.login_via_provider(login.session_id, make_identity(GITHUB, "kim-gh"))

    await reconciliation_service.logout(login.session_id)
    again = await reconciliation_service.logout(login.session_id)

    assert again.session_deleted is False
    assert login.account.id in account_store.accounts


@pytest.mark.asyncio
async def test_completion_survives_logins_and_logouts(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    login = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "lena"))
    await reconciliation_service.login_via_provider(login.session_id, make_identity(GITHUB, "lena-gh"))
    account_id = login.account.id

    session_id = login.session_id
    for provider, user_id in [(GITHUB, "lena-gh"), (SPOTIFY, "lena"), (GITHUB, "lena-gh-2")]:
        await reconciliation_service.logout(session_id)
        fresh = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "lena"))
        relinked = await reconciliation_service.login_via_provider(
            fresh.session_id, make_identity(provider, user_id)
        )
        session_id = relinked.session_id
        row = account_store.accounts[account_id]
        assert row["spotify_user_id"] is not None
        assert row["github_user_id"] is not None

    assert account_store.accounts[account_id]["github_user_id"] == "lena-gh-2"


@pytest.mark.asyncio
async def test_alice_end_to_end_scenario(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    s1 = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "alice"))
    account_a = s1.account
    assert account_a.spotify_user_id == "alice"
    assert account_a.github_user_id is None

    linked = await reconciliation_service.login_via_provider(
        s1.session_id, make_identity(GITHUB, "alice-gh")
    )
    assert linked.account.id == account_a.id
    assert linked.account.state is AccountState.COMPLETE

    logout = await reconciliation_service.logout(s1.session_id)
    assert logout.account_deleted is False
    assert account_a.id in account_store.accounts

    s2 = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "alice"))
    assert s2.account.id == account_a.id
    assert s2.account_created is False
    assert s2.session_id != s1.session_id
    assert len(account_store.accounts) == 1
    _assert_sessions_reference_accounts(account_store)


@pytest.mark.asyncio
async def test_delete_account_requires_confirmation_phrase(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    login = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "mia"))

    with pytest.raises(DeletionConfirmationError):
        await reconciliation_service.delete_account(login.account.id, "yes please")

    assert login.account.id in account_store.accounts


@pytest.mark.asyncio
async def test_delete_account_cascades_to_sessions_and_identities(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    login = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "nora"))
    await reconciliation_service.login_via_provider(login.session_id, make_identity(GITHUB, "nora-gh"))
    await reconciliation_service.login_via_provider(None, make_identity(GITHUB, "nora-gh"))

    deleted = await reconciliation_service.delete_account(login.account.id, DELETION_PHRASE)

    assert deleted is True
    assert account_store.accounts == {}
    assert account_store.sessions == {}
    assert account_store.authentications[SPOTIFY] == {}
    assert account_store.authentications[GITHUB] == {}


@pytest.mark.asyncio
async def test_delete_account_without_spotify_link_uses_github_identity(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    login = await reconciliation_service.login_via_provider(None, make_identity(GITHUB, "olga-gh"))

    assert await reconciliation_service.delete_account(login.account.id, DELETION_PHRASE) is True
    assert account_store.accounts == {}
    assert account_store.authentications[GITHUB] == {}


@pytest.mark.asyncio
async def test_delete_account_twice_reports_zero_rows(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
    caplog: pytest.LogCaptureFixture,
) -> None:
    login = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "pia"))
    await reconciliation_service.delete_account(login.account.id, DELETION_PHRASE)

    with caplog.at_level("WARNING", logger="app.services.reconciliation"):
        deleted = await reconciliation_service.delete_account(login.account.id, DELETION_PHRASE)

    assert deleted is False
    assert "Account deletion affected no rows" in caplog.text


@pytest.mark.asyncio
async def test_unlink_provider_keeps_account(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    login = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "quinn"))
    await reconciliation_service.login_via_provider(login.session_id, make_identity(GITHUB, "quinn-gh"))

    snapshot = await reconciliation_service.unlink_provider(login.account.id, GITHUB)

    assert snapshot.state is AccountState.INCOMPLETE
    assert snapshot.github_user_id is None
    assert account_store.accounts[login.account.id]["spotify_user_id"] == "quinn"
    assert login.session_id in account_store.sessions
    assert account_store.authentications[GITHUB] == {}


@pytest.mark.asyncio
async def test_unlink_then_logout_leaves_no_authentication_rows(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    login = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "rosa"))
    await reconciliation_service.login_via_provider(login.session_id, make_identity(GITHUB, "rosa-gh"))
    await reconciliation_service.unlink_provider(login.account.id, GITHUB)

    result = await reconciliation_service.logout(login.session_id)

    assert result.account_deleted is True
    assert account_store.accounts == {}
    assert account_store.authentications[SPOTIFY] == {}
    assert account_store.authentications[GITHUB] == {}


@pytest.mark.asyncio
async def test_unlink_provider_for_missing_account_raises(
    reconciliation_service: ReconciliationService,
) -> None:
    with pytest.raises(AccountNotFoundError):
        await reconciliation_service.unlink_provider("0" * 32, SPOTIFY)


@pytest.mark.asyncio
async def test_resolve_session_returns_account_and_touches_session(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    login = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "rita"))
    stale = datetime(2020, 1, 1, tzinfo=timezone.utc)
    account_store.sessions[login.session_id]["last_seen_at"] = stale

    current = await reconciliation_service.resolve_session(login.session_id)

    assert current is not None
    assert current.account.id == login.account.id
    assert account_store.sessions[login.session_id]["last_seen_at"] > stale
    assert await reconciliation_service.resolve_session(None) is None
    assert await reconciliation_service.resolve_session("z" * 43) is None


@pytest.mark.asyncio
async def test_prune_stale_sessions_collects_abandoned_accounts(
    account_store: InMemoryAccountStore,
    reconciliation_service: ReconciliationService,
) -> None:
    abandoned = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "sam"))
    complete = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "tess"))
    await reconciliation_service.login_via_provider(complete.session_id, make_identity(GITHUB, "tess-gh"))
    active = await reconciliation_service.login_via_provider(None, make_identity(SPOTIFY, "uma"))

    now = datetime.now(timezone.utc)
    old = now - timedelta(days=45)
    account_store.sessions[abandoned.session_id]["last_seen_at"] = old
    account_store.sessions[complete.session_id]["last_seen_at"] = old

    result = await reconciliation_service.prune_stale_sessions(timedelta(days=30), now=now)

    assert result.sessions_deleted == 2
    assert result.accounts_deleted == (abandoned.account.id,)
    assert complete.account.id in account_store.accounts
    assert list(account_store.sessions) == [active.session_id]
