from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from clickwork.api.v1.deps import get_account
from clickwork.core.auth import CurrentUser
from clickwork.core.dependencies import get_db
from clickwork.models.marketplace import Message
from clickwork.schemas.marketplace import (
    ConversationListResponse,
    ConversationOut,
    MessageCreate,
    MessageOut,
    MessageThreadResponse,
    UnreadCountOut,
)
from clickwork.services.messaging import get_thread, list_conversations, send_message, unread_count

router = APIRouter()


def _message_to_out(message: Message) -> MessageOut:
    return MessageOut(
        id=str(message.id),
        sender_id=str(message.sender_id),
        receiver_id=str(message.receiver_id),
        content=message.content,
        read=bool(message.read),
        created_at=message.created_at,
    )


@router.post("/messages", response_model=MessageOut, status_code=201)
async def post_message(
    payload: MessageCreate,
    current_user: CurrentUser = Depends(get_account),
    db: Session = Depends(get_db),
):
    message = send_message(db, sender_id=current_user.id, receiver_id=payload.receiver_id, content=payload.content)
    return _message_to_out(message)


@router.get("/messages/conversations", response_model=ConversationListResponse)
async def get_conversations(
    current_user: CurrentUser = Depends(get_account),
    db: Session = Depends(get_db),
):
    conversations = list_conversations(db, current_user.id)
    return ConversationListResponse(
        items=[
            ConversationOut(
                partner_id=c.partner_id,
                first_name=c.first_name,
                last_name=c.last_name,
                last_message=c.last_message,
                last_message_at=c.last_message_at,
                unread_count=c.unread_count,
            )
            for c in conversations
        ]
    )


@router.get("/messages/unread-count", response_model=UnreadCountOut)
async def get_unread_count(
    current_user: CurrentUser = Depends(get_account),
    db: Session = Depends(get_db),
):
    return UnreadCountOut(unread=unread_count(db, current_user.id))


@router.get("/messages/with/{partner_id}", response_model=MessageThreadResponse)
async def get_messages_with(
    partner_id: str,
    current_user: CurrentUser = Depends(get_account),
    db: Session = Depends(get_db),
):
    messages = get_thread(db, user_id=current_user.id, partner_id=partner_id)
    return MessageThreadResponse(partner_id=partner_id, items=[_message_to_out(m) for m in messages])
