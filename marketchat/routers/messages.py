from fastapi import APIRouter, Depends, Response, status

from marketchat.core.logging import get_logger
from marketchat.schemas.chat import CreateMessageRequest, MessagePublic, UpdateMessageRequest
from marketchat.services.chat_service import ChatService
from marketchat.services.gateway import RealtimeGateway
from marketchat.utils.dependencies import get_chat_service, get_current_user, get_gateway


logger = get_logger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])


@router.post("", response_model=MessagePublic, status_code=status.HTTP_201_CREATED)
async def send_message(
    body: CreateMessageRequest,
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    saved = await service.create_message(body.conversation_id, current_user["_id"], body.content, body.reply_to)
    message = MessagePublic.from_document(saved)
    convo = await service.get_conversation(body.conversation_id)
    logger.info("Fan-out of message %s to conversation %s", message.id, message.conversation_id)
    await gateway.publish_message(message.model_dump(mode="json"), convo["participants"])
    return message


@router.put("/{message_id}", response_model=MessagePublic)
async def update_message(
    message_id: str,
    body: UpdateMessageRequest,
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    updated = await service.update_message(message_id, current_user["_id"], body.content)
    message = MessagePublic.from_document(updated)
    await gateway.publish_message_updated(message.model_dump(mode="json"))
    return message


@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    message_id: str,
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    deleted = await service.delete_message(message_id, current_user["_id"])
    await gateway.publish_message_deleted(deleted["_id"], deleted["conversation_id"])
    return Response(status_code=status.HTTP_204_NO_CONTENT)
