"""
Presence endpoints:
  POST /presence/{user_id}/connect
  POST /presence/{user_id}/disconnect
  GET  /presence/{user_id}
  GET  /presence            — currently online user ids
"""
from fastapi import APIRouter, Depends, status

from contextfeed.dependencies import get_presence
from contextfeed.presence import PresenceTracker
from contextfeed.schemas import PresenceResponse

router = APIRouter()


@router.get("/", response_model=list[str])
async def list_online(presence: PresenceTracker = Depends(get_presence)):
    return presence.online_users()


@router.post("/{user_id}/connect", status_code=status.HTTP_204_NO_CONTENT)
async def connect(user_id: str, presence: PresenceTracker = Depends(get_presence)):
    await presence.connect(user_id)


@router.post("/{user_id}/disconnect", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(user_id: str, presence: PresenceTracker = Depends(get_presence)):
    await presence.disconnect(user_id)


@router.get("/{user_id}", response_model=PresenceResponse)
async def get_presence_status(user_id: str, presence: PresenceTracker = Depends(get_presence)):
    return PresenceResponse(
        user_id=user_id,
        online=presence.is_online(user_id),
        last_seen_at=await presence.last_seen(user_id),
    )
