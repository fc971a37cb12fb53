from fastapi import APIRouter, HTTPException, Request
from loguru import logger

from finance_bot.deps import Services
from finance_bot.errors import PermissionDenied, StorageUnavailable
from finance_bot.models.schemas import (
    CancelTransactionRequest,
    ConfirmationCallback,
    Group,
    GroupSettings,
    InboundMessage,
    OutboundReply,
    Participant,
    SettingUpdateRequest,
    Transaction,
)

router = APIRouter()


def _services(request: Request) -> Services:
    return request.app.state.services


async def _group_or_404(services: Services, chat_id: int) -> Group:
    try:
        group = await services.groups.get_group(chat_id)
    except StorageUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return group


async def _actor_or_403(services: Services, group: Group, user_id: int) -> Participant:
    actor = await services.groups.find_participant(group, user_id)
    if actor is None:
        raise HTTPException(status_code=403, detail="Not a participant of this group")
    return actor


@router.get("/health")
def health():
    return {"status": "ok"}


@router.post("/messages", response_model=OutboundReply | None)
async def post_message(event: InboundMessage, request: Request):
    logger.info("HTTP message from {} in {}", event.user_id, event.conversation_id)
    return await _services(request).orchestrator.dispatch(event)


@router.post("/confirmations", response_model=OutboundReply)
async def post_confirmation(event: ConfirmationCallback, request: Request):
    return await _services(request).orchestrator.dispatch(event)


@router.get("/groups/{chat_id}/wallet", response_model=dict[str, float])
async def get_wallet(chat_id: int, request: Request):
    services = _services(request)
    group = await _group_or_404(services, chat_id)
    return services.recorder.get_balances(group)


@router.post("/groups/{chat_id}/wallet/reconcile", response_model=dict[str, float])
async def reconcile_wallet(chat_id: int, request: Request):
    services = _services(request)
    group = await _group_or_404(services, chat_id)
    balances = services.recorder.reconcile(group)
    logger.info("Reconciled wallet of group {}", chat_id)
    return balances


@router.get("/groups/{chat_id}/transactions", response_model=list[Transaction])
async def list_transactions(chat_id: int, request: Request, limit: int = 50):
    services = _services(request)
    group = await _group_or_404(services, chat_id)
    return services.recorder.recent(group, limit=limit)


@router.post("/groups/{chat_id}/transactions/{txn_id}/cancel", response_model=Transaction)
async def cancel_transaction(chat_id: int, txn_id: str, body: CancelTransactionRequest, request: Request):
    services = _services(request)
    group = await _group_or_404(services, chat_id)
    actor = await _actor_or_403(services, group, body.by_user)
    try:
        return services.recorder.cancel(group, txn_id, actor)
    except LookupError as e:
        raise HTTPException(status_code=404, detail="Transaction not found") from e
    except PermissionDenied as e:
        raise HTTPException(status_code=403, detail=str(e)) from e


@router.get("/groups/{chat_id}/settings", response_model=GroupSettings)
async def get_group_settings(chat_id: int, request: Request):
    group = await _group_or_404(_services(request), chat_id)
    return group.settings


@router.patch("/groups/{chat_id}/settings", response_model=GroupSettings)
async def update_group_settings(chat_id: int, body: SettingUpdateRequest, request: Request):
    services = _services(request)
    group = await _group_or_404(services, chat_id)
    actor = await _actor_or_403(services, group, body.updated_by)
    if not actor.can("configure"):
        raise HTTPException(status_code=403, detail="Only admins can change settings")

    old = getattr(group.settings, body.key, None)
    try:
        updated = await services.groups.update_setting(chat_id, body.key, body.value, body.updated_by)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    services.audit.record(
        "update_setting",
        chat_id=chat_id,
        user_id=body.updated_by,
        entity_type="setting",
        entity_id=body.key,
        old_value=old,
        new_value=body.value,
    )
    logger.info("Updated setting {} of group {}", body.key, chat_id)
    return updated
