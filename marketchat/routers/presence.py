from fastapi import APIRouter, Depends

from marketchat.services.gateway import RealtimeGateway
from marketchat.utils.dependencies import get_current_user, get_gateway


router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{user_id}")
async def presence(user_id: str, current_user: dict = Depends(get_current_user), gateway: RealtimeGateway = Depends(get_gateway)):
    """
    Online status. A user is online when this process holds a connection for
    them or, with Redis configured, when another process refreshed their
    presence key within the TTL.
    """
    online = gateway.registry.is_online(user_id)
    if not online and gateway.bus.enabled:
        online = await gateway.bus.is_online(user_id)
    return {"user_id": user_id, "online": online}
