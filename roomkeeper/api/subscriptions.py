"""
Subscription API routes.

Thin surface over the SubscriptionEngine:
- GET    /v1/subscriptions/state      current state + plan catalogue
- POST   /v1/subscriptions/refresh    manual check against billing
- POST   /v1/subscriptions/purchase   purchase a plan (downgrade-guarded)
- POST   /v1/subscriptions/restore    restore purchases
- POST   /v1/subscriptions/reconcile  pull from the durable record
- POST   /v1/rooms                    create a room (quota-gated)
- DELETE /v1/rooms/{room_id}          delete an owned room
- DELETE /v1/account                  delete the account
- WS     /v1/ws/subscriptions/{user_id}  subscription event stream

The caller is identified by the X-User-Id header.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from roomkeeper.core.errors import ValidationError
from roomkeeper.core.logging import log_event
from roomkeeper.features.subscriptions.engine import SubscriptionEngine
from roomkeeper.models.plan import Plan, plan_catalogue
from roomkeeper.models.subscription import OperationResult

logger = logging.getLogger(__name__)

router = APIRouter(tags=["subscriptions"])


class PurchaseRequest(BaseModel):
    """Store purchase to validate; a missing fetch_token means the user cancelled."""
    plan: str
    fetch_token: Optional[str] = None


class CreateRoomRequest(BaseModel):
    name: Optional[str] = None


def get_engine(request: Request) -> SubscriptionEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Subscription engine not available")
    return engine


def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


def _parse_plan(value: str) -> Plan:
    for plan in Plan:
        if value in (plan.name, plan.value, plan.product_id):
            return plan
    raise ValidationError(f"Unknown plan: {value}")


def _result_body(result: OperationResult) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": result.success}
    if result.message:
        body["message"] = result.message
    if result.error_code:
        body["code"] = result.error_code
    if result.state is not None:
        body["state"] = result.state.to_public()
    if result.data:
        body.update(result.data)
    return body


@router.get("/v1/subscriptions/state")
async def get_state(user_id: str = Depends(get_user_id), engine: SubscriptionEngine = Depends(get_engine)):
    state = engine.get_state(user_id)
    return {
        "state": state.to_public(),
        "owned_rooms": sorted(engine.owned_rooms(user_id)),
        "can_create_room": engine.can_create_room(user_id),
        "plans": plan_catalogue(),
    }


@router.post("/v1/subscriptions/refresh")
async def refresh(user_id: str = Depends(get_user_id), engine: SubscriptionEngine = Depends(get_engine)):
    return _result_body(await engine.refresh(user_id))


@router.post("/v1/subscriptions/purchase")
async def purchase(
    body: PurchaseRequest,
    user_id: str = Depends(get_user_id),
    engine: SubscriptionEngine = Depends(get_engine),
):
    plan = _parse_plan(body.plan)
    if plan is Plan.NONE:
        raise ValidationError("Cannot purchase the empty plan")
    return _result_body(await engine.purchase(user_id, plan, body.fetch_token))


@router.post("/v1/subscriptions/restore")
async def restore(user_id: str = Depends(get_user_id), engine: SubscriptionEngine = Depends(get_engine)):
    return _result_body(await engine.restore_purchases(user_id))


@router.post("/v1/subscriptions/reconcile")
async def reconcile(user_id: str = Depends(get_user_id), engine: SubscriptionEngine = Depends(get_engine)):
    return _result_body(await engine.reconcile_from_store(user_id))


@router.post("/v1/rooms")
async def create_room(
    body: CreateRoomRequest,
    user_id: str = Depends(get_user_id),
    engine: SubscriptionEngine = Depends(get_engine),
):
    return _result_body(await engine.create_room(user_id, body.name))


@router.delete("/v1/rooms/{room_id}")
async def delete_room(
    room_id: str,
    user_id: str = Depends(get_user_id),
    engine: SubscriptionEngine = Depends(get_engine),
):
    return _result_body(await engine.delete_room(user_id, room_id))


@router.delete("/v1/account")
async def delete_account(user_id: str = Depends(get_user_id), engine: SubscriptionEngine = Depends(get_engine)):
    return _result_body(await engine.delete_account(user_id))


async def _reject_and_close(websocket: WebSocket, code: str, message: str) -> None:
    await websocket.send_json({"type": "error", "code": code, "message": message})
    await websocket.close(code=1008, reason=message)


@router.websocket("/v1/ws/subscriptions/{user_id}")
async def subscription_events(websocket: WebSocket, user_id: str):
    """
    Stream subscription events for one user.

    Read-only socket; clients may send {"type": "ping"} to keep it alive.
    Only the user named in the path may listen, identified by X-User-Id.
    """
    engine: Optional[SubscriptionEngine] = getattr(websocket.app.state, "engine", None)
    await websocket.accept()
    connection_id = str(uuid4())
    caller = websocket.headers.get("X-User-Id")
    if caller != user_id:
        await _reject_and_close(websocket, "forbidden", "Unauthorized: missing or mismatched X-User-Id")
        log_event("info", "ws.unauthorized", user_id=caller, connection_id=connection_id, requested_user=user_id)
        return
    if engine is None:
        await websocket.close(code=1013)
        return

    queue, unsubscribe = engine.bus.open_queue(user_id)
    log_event("info", "ws.connected", user_id=user_id, connection_id=connection_id)

    await websocket.send_json({
        "type": "connected",
        "user_id": user_id,
        "ts": datetime.now(timezone.utc).isoformat(),
        "connection_id": connection_id,
        "state": engine.get_state(user_id).to_public(),
    })

    async def _pump() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_message())

    pump = asyncio.create_task(_pump())
    try:
        while True:
            data = await websocket.receive_json()
            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({"type": "pong", "ts": datetime.now(timezone.utc).isoformat()})
    except WebSocketDisconnect:
        log_event("info", "ws.disconnected", user_id=user_id, connection_id=connection_id)
    except Exception as e:
        log_event("error", "ws.loop_error", user_id=user_id, connection_id=connection_id, error=str(e))
    finally:
        pump.cancel()
        unsubscribe()
