"""
Monitoring state machine.

    Stopped → Starting → Running → Stopping → Stopped

Start opens a session, binds the recorder and starts the click listener.
Stop seals the session first, so clicks still waiting for a stable screen
are discarded instead of written, then waits for them to finish.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional, Protocol, Set, Tuple

from pydantic import BaseModel

from .errors import InvalidTransition
from .recorder import EventRecorder
from .storage import SessionStore

logger = logging.getLogger(__name__)


class MonitoringState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class Listener(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...


ListenerFactory = Callable[[Callable[[Tuple[float, float], Tuple[str, ...]], None], asyncio.AbstractEventLoop], Listener]


def default_listener_factory(callback, loop) -> Listener:
    from .observers.clicks import ClickObserver

    return ClickObserver(callback, loop)


class MonitoringStatus(BaseModel):
    state: MonitoringState
    session_id: Optional[str] = None
    events_recorded: int = 0
    events_in_flight: int = 0


class MonitoringController:
    def __init__(
        self,
        store: SessionStore,
        recorder: EventRecorder,
        listener_factory: ListenerFactory = default_listener_factory,
    ):
        self.store = store
        self.recorder = recorder
        self.listener_factory = listener_factory
        self.state = MonitoringState.STOPPED
        self._session_id: Optional[str] = None
        self._cancel: Optional[asyncio.Event] = None
        self._listener: Optional[Listener] = None
        self._tasks: Set[asyncio.Task] = set()
        self._recorded = 0

    def _transition(self, allowed_from: MonitoringState, to: MonitoringState) -> None:
        if self.state != allowed_from:
            raise InvalidTransition(f"Cannot go from {self.state.value} to {to.value}")
        logger.debug(f"Monitoring {self.state.value} -> {to.value}")
        self.state = to

    def status(self) -> MonitoringStatus:
        return MonitoringStatus(
            state=self.state,
            session_id=self._session_id,
            events_recorded=self._recorded,
            events_in_flight=len(self._tasks),
        )

    async def start(self) -> MonitoringStatus:
        self._transition(MonitoringState.STOPPED, MonitoringState.STARTING)
        try:
            session_id = await asyncio.to_thread(self.store.start_session)
            self._cancel = asyncio.Event()
            self._session_id = session_id
            self._recorded = 0
            self.recorder.bind(session_id, self._cancel)
            self._listener = self.listener_factory(self.handle_click, asyncio.get_running_loop())
            self._listener.start()
        except Exception:
            logger.exception("Monitoring failed to start")
            self.recorder.unbind()
            self.store.end_session()
            self._listener = None
            self._session_id = None
            self.state = MonitoringState.STOPPED
            raise

        self.state = MonitoringState.RUNNING
        logger.info(f"Monitoring started, session {session_id}")
        return self.status()

    async def stop(self) -> MonitoringStatus:
        self._transition(MonitoringState.RUNNING, MonitoringState.STOPPING)
        if self._listener is not None:
            self._listener.stop()
            self._listener = None

        # Seal before draining: in-flight clicks must not land in the session
        if self._cancel is not None:
            self._cancel.set()
        await asyncio.to_thread(self.store.end_session)
        self.recorder.unbind()

        if self._tasks:
            logger.info(f"Discarding {len(self._tasks)} in-flight click(s)")
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self.state = MonitoringState.STOPPED
        status = self.status()
        self._session_id = None
        self._cancel = None
        logger.info(f"Monitoring stopped, session {status.session_id}: {status.events_recorded} events")
        return status

    def handle_click(self, position: Tuple[float, float], modifiers: Tuple[str, ...] = ()) -> Optional[asyncio.Task]:
        """Called on the event loop thread for every click."""
        if self.state != MonitoringState.RUNNING:
            return None
        task = asyncio.get_running_loop().create_task(self.recorder.on_click(position, modifiers))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Click handling crashed: {exc!r}")
        elif task.result() is not None:
            self._recorded += 1
