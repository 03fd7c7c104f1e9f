"""Inter-agent message routes: send, report loop stages, break loops."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.api.errors import conflict, not_found
from switchboard.db.engine import get_db
from switchboard.schemas.loop import LoopBreak, MessageCreate, MessageRead, StageReport
from switchboard.services.errors import InvalidTransitionError, NotFoundError
from switchboard.services.messaging import MessagingService

router = APIRouter()


def _svc(db: AsyncSession = Depends(get_db)) -> MessagingService:
    return MessagingService(db)


@router.post("/messages", response_model=MessageRead, status_code=201)
async def send_message(body: MessageCreate, svc: MessagingService = Depends(_svc)):
    try:
        return await svc.send_direct_message(
            body.from_agent,
            body.to_agent,
            body.content,
            priority=body.priority,
            expected_reply_by=body.expected_reply_by,
            expected_action_by=body.expected_action_by,
            expected_report_by=body.expected_report_by,
        )
    except NotFoundError as e:
        raise not_found(e)


@router.get("/messages/{message_id}", response_model=MessageRead)
async def get_message(message_id: int, svc: MessagingService = Depends(_svc)):
    try:
        return await svc.get(message_id)
    except NotFoundError as e:
        raise not_found(e)


@router.post("/messages/{message_id}/stage", response_model=MessageRead)
async def report_stage(
    message_id: int,
    body: StageReport,
    svc: MessagingService = Depends(_svc),
):
    """Record the next loop stage. Re-reporting a reached stage is a no-op.

    409 when the report would skip a stage.
    """
    try:
        return await svc.advance(message_id, body.stage)
    except NotFoundError as e:
        raise not_found(e)
    except InvalidTransitionError as e:
        raise conflict(e)


@router.post("/messages/{message_id}/broken", response_model=MessageRead)
async def break_loop(
    message_id: int,
    body: LoopBreak,
    svc: MessagingService = Depends(_svc),
):
    try:
        return await svc.mark_broken(message_id, body.reason)
    except NotFoundError as e:
        raise not_found(e)
