from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from taskswarm.errors import DecisionTimeout
from taskswarm.models import EventHook

logger = logging.getLogger(__name__)

Responder = Callable[["DecisionRequest"], None]


@dataclass(slots=True)
class DecisionRequest:
    kind: str
    message: str
    options: list[str]
    default: str
    agent_ids: list[str] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "message": self.message,
            "options": list(self.options),
            "default": self.default,
            "agent_ids": list(self.agent_ids),
            "context": dict(self.context),
        }


@dataclass(slots=True)
class Decision:
    request_id: str
    action: str
    timed_out: bool = False
    responder: str | None = None


@dataclass(slots=True)
class _Pending:
    request: DecisionRequest
    future: asyncio.Future[Decision]
    loop: asyncio.AbstractEventLoop


class DecisionBroker:
    """In-memory channel between the monitor and an operator.

    ``ask`` never waits longer than its timeout: silence resolves to the
    request's default. The first ``respond`` for a request wins; later
    answers, and answers after the timeout, are rejected.
    """

    def __init__(self, *, timeout_seconds: float = 30.0, event_hook: EventHook | None = None):
        self.timeout_seconds = timeout_seconds
        self.event_hook = event_hook
        self._pending: dict[str, _Pending] = {}
        self._responders: list[Responder] = []

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def add_responder(self, responder: Responder) -> None:
        self._responders.append(responder)

    def pending(self) -> list[DecisionRequest]:
        return [entry.request for entry in self._pending.values()]

    async def ask(self, request: DecisionRequest, *, timeout: float | None = None) -> Decision:
        if request.default not in request.options:
            raise ValueError(f"Default {request.default!r} is not one of {request.options}")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Decision] = loop.create_future()
        self._pending[request.id] = _Pending(request, future, loop)
        wait = self.timeout_seconds if timeout is None else timeout

        logger.warning(
            "Decision needed [%s] %s (options: %s)",
            request.id,
            request.message,
            ", ".join(request.options),
        )
        self._emit({"event": "decision_requested", **request.to_dict()})
        for responder in list(self._responders):
            try:
                responder(request)
            except Exception:
                logger.exception("Decision responder failed for %s", request.id)

        try:
            decision = await asyncio.wait_for(asyncio.shield(future), timeout=wait)
        except TimeoutError:
            if future.done():
                decision = future.result()
            else:
                decision = Decision(request.id, request.default, timed_out=True)
                future.set_result(decision)
                logger.warning(
                    "%s; applying default %r",
                    DecisionTimeout(f"No response to {request.kind} decision {request.id}"),
                    request.default,
                )
        finally:
            self._pending.pop(request.id, None)

        self._emit(
            {
                "event": "decision_resolved",
                "id": request.id,
                "action": decision.action,
                "timed_out": decision.timed_out,
            }
        )
        return decision

    def respond(self, request_id: str, action: str, *, responder: str | None = None) -> bool:
        """Answer a pending request from the event loop thread."""
        entry = self._pending.get(request_id)
        if entry is None or entry.future.done():
            return False
        if action not in entry.request.options:
            raise ValueError(f"{action!r} is not a valid answer; expected {entry.request.options}")
        entry.future.set_result(Decision(request_id, action, responder=responder))
        return True

    def respond_threadsafe(
        self,
        request_id: str,
        action: str,
        *,
        responder: str | None = None,
        timeout: float = 5.0,
    ) -> bool:
        entry = self._pending.get(request_id)
        if entry is None:
            return False

        async def _respond() -> bool:
            return self.respond(request_id, action, responder=responder)

        handle = asyncio.run_coroutine_threadsafe(_respond(), entry.loop)
        return handle.result(timeout)
