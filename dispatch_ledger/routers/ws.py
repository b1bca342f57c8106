from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from ..auth import decode_token
from ..ws_manager import PARTIES, session_ws_manager


router = APIRouter()


@router.websocket("/ws/{party}")
async def ws_party(websocket: WebSocket, party: str):
    # auth via token query (?token=JWT); the token role must match the channel
    token = websocket.query_params.get("token")
    if not token or party not in PARTIES:
        await websocket.close(code=4401)
        return
    try:
        principal = decode_token(token)
    except HTTPException:
        await websocket.close(code=4401)
        return
    if principal.role != party:
        await websocket.close(code=4403)
        return
    party_id = str(principal.subject_id)
    await session_ws_manager.connect(party, party_id, websocket)
    try:
        while True:
            # keep alive; clients do not send commands
            await websocket.receive_text()
    except WebSocketDisconnect:
        await session_ws_manager.disconnect(party, party_id, websocket)
