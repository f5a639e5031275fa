"""WebSocket stream of lifecycle events."""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from minion.events import BaseEvent, SubscriptionClosed
from minion.orchestrator.models import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


def event_message(event: BaseEvent) -> dict:
    return {
        "type": event.kind,
        "agent_id": event.agent_id,
        "timestamp": event.timestamp.isoformat(),
        "data": event.model_dump(mode="json"),
    }


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws")
async def event_stream(websocket: WebSocket) -> None:
    """Send the current agents, then every event, until the client leaves."""
    manager = websocket.app.state.manager
    await websocket.accept()
    logger.info("WebSocket client connected")

    # subscribe before the snapshot so nothing falls between the two
    subscription = manager.events.subscribe()
    receiver = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        await websocket.send_json({
            "type": "initial_state",
            "timestamp": utcnow().isoformat(),
            "data": {
                "agents": [a.model_dump(mode="json") for a in manager.list_agents()],
            },
        })

        while True:
            getter = asyncio.create_task(subscription.get())
            done, _ = await asyncio.wait(
                {getter, receiver}, return_when=asyncio.FIRST_COMPLETED
            )
            if receiver in done:
                getter.cancel()
                break
            try:
                event = getter.result()
            except SubscriptionClosed:
                break
            await websocket.send_json(event_message(event))
    except WebSocketDisconnect:
        pass
    finally:
        receiver.cancel()
        subscription.close()
        logger.info("WebSocket client disconnected")
