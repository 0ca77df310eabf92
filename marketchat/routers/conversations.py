from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from marketchat.schemas.chat import ConversationPage, ConversationPublic, MessageList, MessagePublic, StartConversationRequest
from marketchat.services.chat_service import ChatService
from marketchat.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.post("", response_model=ConversationPublic, status_code=status.HTTP_201_CREATED)
async def start_conversation(body: StartConversationRequest, response: Response, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    convo, created = await service.get_or_create(current_user["_id"], body.participant_id, body.service_id)
    if not created:
        response.status_code = status.HTTP_200_OK
    return ConversationPublic.from_document(convo)


@router.get("", response_model=ConversationPage)
async def list_conversations(limit: int = Query(20, ge=1, le=100), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    items, next_cursor = await service.list_conversations(current_user["_id"], limit=limit, cursor=cursor)
    return ConversationPage(items=[ConversationPublic.from_document(it) for it in items], next_cursor=next_cursor)


@router.get("/{conversation_id}/messages", response_model=MessageList)
async def list_messages(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    messages = await service.list_messages(conversation_id, current_user["_id"])
    return MessageList(items=[MessagePublic.from_document(m) for m in messages])
