"""Account API endpoints."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.api.v1.auth.utils import clear_session_cookie, parse_provider
from app.dependencies import AppSettings, CurrentAccount, Reconciliation
from app.models.authentication import Provider
from app.schemas.auth import (
    AccountResponse,
    AuthMessageResponse,
    DeleteAccountRequest,
    LinkedIdentityResponse,
)
from app.services.reconciliation import AccountSnapshot

logger = logging.getLogger(__name__)

router = APIRouter()


def to_account_response(account: AccountSnapshot) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        state=account.state.value,
        is_complete=account.is_complete,
        created_at=account.created_at,
        identities=[
            LinkedIdentityResponse(provider=provider, user_id=account.linked_user_id(provider))
            for provider in Provider
        ],
    )


@router.get("", response_model=AccountResponse)
async def get_account(current_user: CurrentAccount) -> AccountResponse:
    """Return the signed-in account and its linked identities."""
    return to_account_response(current_user.account)


@router.post("/delete", response_model=AuthMessageResponse)
async def delete_account(
    payload: DeleteAccountRequest,
    current_user: CurrentAccount,
    settings: AppSettings,
    service: Reconciliation,
) -> JSONResponse:
    """Delete the signed-in account after an explicit confirmation phrase."""
    deleted = await service.delete_account(current_user.account.id, payload.confirmation)
    message = "Account deleted" if deleted else "Account was already deleted"
    response = JSONResponse(content=AuthMessageResponse(message=message).model_dump())
    clear_session_cookie(response, settings)
    return response


@router.delete("/identities/{provider}", response_model=AccountResponse)
async def unlink_identity(
    provider: str,
    current_user: CurrentAccount,
    service: Reconciliation,
) -> AccountResponse:
    """Remove one provider identity from the signed-in account."""
    resolved = parse_provider(provider)
    account = await service.unlink_provider(current_user.account.id, resolved)
    return to_account_response(account)
