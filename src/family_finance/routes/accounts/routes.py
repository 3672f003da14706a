"""Bank account routes: linked accounts, institution linking and the provider webhook."""

from fastapi import APIRouter, Depends

from family_finance.integrations.belvo import belvo_client
from family_finance.managers.bank_account_manager import bank_account_manager
from family_finance.managers.family_context import PERMISSION_READ, PERMISSION_WRITE, FamilyContext
from family_finance.managers.security_manager import rate_limit
from family_finance.routes.accounts.models import LinkInstitutionRequest, WebhookPayload
from family_finance.routes.family.dependencies import require_family_permission
from family_finance.utils.serialization import to_public

router = APIRouter(prefix="/accounts", tags=["Bank Accounts"])


@router.get("")
async def list_accounts(context: FamilyContext = Depends(require_family_permission(PERMISSION_READ))):
    return {"accounts": to_public(await bank_account_manager.list_accounts(context.user_id))}


@router.post("/link", dependencies=[Depends(rate_limit("api"))])
async def link_institution(
    payload: LinkInstitutionRequest,
    context: FamilyContext = Depends(require_family_permission(PERMISSION_WRITE)),
):
    result = await bank_account_manager.link_institution(
        context.user_id, context.family.id, payload.institution, payload.username, payload.password
    )
    return {"success": True, **result}


@router.get("/token")
async def widget_token(context: FamilyContext = Depends(require_family_permission(PERMISSION_WRITE))):
    """Short-lived access token for the provider's connect widget."""
    return {"access": await belvo_client.get_access_token()}


@router.post("/webhook", dependencies=[Depends(rate_limit("webhook"))])
async def provider_webhook(payload: WebhookPayload):
    result = await bank_account_manager.handle_webhook(payload.model_dump())
    return {"success": True, **result}


@router.post("/{account_id}/refresh", dependencies=[Depends(rate_limit("api"))])
async def refresh_account(
    account_id: str, context: FamilyContext = Depends(require_family_permission(PERMISSION_WRITE))
):
    result = await bank_account_manager.refresh_account(context.user_id, account_id)
    return {"success": True, **result}


@router.delete("/{account_id}")
async def unlink_account(account_id: str, context: FamilyContext = Depends(require_family_permission(PERMISSION_WRITE))):
    """Disconnect the bank link behind an account. Previously synced transactions stay."""
    deactivated = await bank_account_manager.unlink_account(context.user_id, account_id)
    return {"success": True, "accounts_deactivated": deactivated}
