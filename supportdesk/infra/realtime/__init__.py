"""Realtime websocket transport: session registry, socket hub and gateway."""

from supportdesk.infra.realtime.hub import ConnectionHub
from supportdesk.infra.realtime.registry import SessionRegistry

__all__ = ["ConnectionHub", "SessionRegistry"]
