"""
WebSocket Routes for Real-time Event Streaming.

Streams lifecycle events of one instance (or of all instances) as they
are published on the event bus.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import logging

from phaseflow.api.deps import engine, event_bus


logger = logging.getLogger(__name__)

router = APIRouter(tags=["WebSocket"])


@router.websocket("/ws/instances/{instance_id}")
async def websocket_instance(websocket: WebSocket, instance_id: str):
    """
    Stream the events of one instance.

    On connect the current state is sent, followed by every event the
    instance has published so far and then live events. The stream
    ends with a "completed" message once the instance finishes.

    Message format (server -> client):
    ```json
    {"type": "event", "event": {"type": "node-completed", "node_id": "plan", ...}}
    ```
    """
    state = engine.get_workflow_state(instance_id)
    if state is None:
        await websocket.close(code=4004, reason=f"Instance '{instance_id}' not found")
        return

    await websocket.accept()
    logger.info(f"WebSocket connected for instance: {instance_id}")

    try:
        await websocket.send_json({
            "type": "current_state",
            "state": state.model_dump(mode="json"),
        })

        async for event in event_bus.subscribe(instance_id, replay=True):
            await websocket.send_json({
                "type": "event",
                "event": event.model_dump(mode="json"),
            })

        final = engine.get_workflow_state(instance_id)
        await websocket.send_json({
            "type": "completed",
            "state": final.model_dump(mode="json") if final else None,
        })
        await websocket.close()

    except WebSocketDisconnect:
        logger.info(f"Client disconnected from instance {instance_id}")
    finally:
        logger.info(f"WebSocket closed for instance: {instance_id}")


@router.websocket("/ws/events")
async def websocket_all_events(websocket: WebSocket):
    """Stream the live events of every instance until the client disconnects."""
    await websocket.accept()
    try:
        async for event in event_bus.subscribe(None, replay=False, stop_on_terminal=False):
            await websocket.send_json({
                "type": "event",
                "event": event.model_dump(mode="json"),
            })
    except WebSocketDisconnect:
        logger.info("Client disconnected from event stream")
