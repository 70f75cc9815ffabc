"""
Event Bus for Workflow Lifecycle Notifications.

A single multiplexed channel: every event carries the instance id, and
observers filter on it. Events for one instance are published from that
instance's task only, so they arrive in execution order.

Two ways to observe:
    - listeners: synchronous callbacks invoked on publish (logging, tests)
    - subscriptions: async generators backed by per-subscriber queues
      (WebSocket streaming)
"""

from typing import Any, AsyncGenerator, Callable, Deque, Dict, List, Optional
from collections import deque
from datetime import datetime
from enum import Enum
import asyncio
import logging
import uuid

from pydantic import BaseModel, Field

from phaseflow.config import settings


logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Lifecycle event types."""
    WORKFLOW_STARTED = "workflow-started"
    WORKFLOW_PAUSED = "workflow-paused"
    WORKFLOW_RESUMED = "workflow-resumed"
    WORKFLOW_COMPLETED = "workflow-completed"
    WORKFLOW_FAILED = "workflow-failed"
    NODE_STARTED = "node-started"
    NODE_COMPLETED = "node-completed"
    NODE_FAILED = "node-failed"
    NODE_SKIPPED = "node-skipped"
    NODE_RETRYING = "node-retrying"
    APPROVAL_REQUIRED = "approval-required"
    APPROVAL_RESOLVED = "approval-resolved"
    USER_INPUT_REQUIRED = "user-input-required"


TERMINAL_EVENTS = frozenset({EventType.WORKFLOW_COMPLETED, EventType.WORKFLOW_FAILED})


class WorkflowEvent(BaseModel):
    """A timestamped lifecycle notification routed by instance id."""
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: EventType
    instance_id: str
    timestamp: datetime = Field(default_factory=datetime.now)
    node_id: Optional[str] = None
    node_name: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


Listener = Callable[[WorkflowEvent], None]


class _Subscription:
    def __init__(self, instance_id: Optional[str]):
        self.instance_id = instance_id
        self.queue: "asyncio.Queue[Optional[WorkflowEvent]]" = asyncio.Queue()

    def matches(self, event: WorkflowEvent) -> bool:
        return self.instance_id is None or self.instance_id == event.instance_id


class EventBus:
    """
    Multi-producer, multi-consumer broadcast of workflow events.

    Publishing is synchronous and never blocks: queues are unbounded
    and listener failures are logged, not raised.
    """

    def __init__(self, history_limit: Optional[int] = None):
        self._history_limit = history_limit or settings.EVENT_HISTORY_LIMIT
        self._history: Dict[str, Deque[WorkflowEvent]] = {}
        self._listeners: List[Listener] = []
        self._subscriptions: List[_Subscription] = []

    # ============================================================
    # Publishing
    # ============================================================

    def publish(self, event: WorkflowEvent) -> None:
        """Deliver an event to listeners and matching subscribers."""
        history = self._history.get(event.instance_id)
        if history is None:
            history = deque(maxlen=self._history_limit)
            self._history[event.instance_id] = history
        history.append(event)

        logger.debug(f"Event {event.type.value} for {event.instance_id} (node={event.node_id})")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Event listener failed: {e}")

        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.queue.put_nowait(event)

    def emit(
        self,
        event_type: EventType,
        instance_id: str,
        node_id: Optional[str] = None,
        node_name: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> WorkflowEvent:
        """Build and publish an event."""
        event = WorkflowEvent(
            type=event_type,
            instance_id=instance_id,
            node_id=node_id,
            node_name=node_name,
            data=data or {},
            error=error,
        )
        self.publish(event)
        return event

    # ============================================================
    # Observing
    # ============================================================

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def subscribe(
        self,
        instance_id: Optional[str] = None,
        replay: bool = True,
        stop_on_terminal: bool = True,
    ) -> AsyncGenerator[WorkflowEvent, None]:
        """
        Stream events, optionally for one instance only.

        Args:
            instance_id: Only yield events of this instance (None = all)
            replay: First yield the instance's retained history
            stop_on_terminal: End after the instance completes or fails
        """
        subscription = _Subscription(instance_id)
        self._subscriptions.append(subscription)
        logger.info(f"Event subscriber added (instance={instance_id})")

        try:
            if replay and instance_id is not None:
                for event in list(self._history.get(instance_id, ())):
                    yield event
                    if stop_on_terminal and event.type in TERMINAL_EVENTS:
                        return

            while True:
                event = await subscription.queue.get()
                if event is None:
                    break
                yield event
                if stop_on_terminal and instance_id is not None and event.type in TERMINAL_EVENTS:
                    break
        finally:
            self._subscriptions.remove(subscription)
            logger.info(f"Event subscriber removed (instance={instance_id})")

    def close_subscriptions(self) -> None:
        """Wake up and end every active subscription."""
        for subscription in list(self._subscriptions):
            subscription.queue.put_nowait(None)

    def history(self, instance_id: str) -> List[WorkflowEvent]:
        return list(self._history.get(instance_id, ()))

    def clear_history(self, instance_id: str) -> None:
        self._history.pop(instance_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
