"""Change notifier: turns cache changes into hub events."""

import logging
from typing import Any, Dict, Optional

from app.event_hub import EventHub, EventType

logger = logging.getLogger(__name__)


class ChangeNotifier:
    def __init__(self, hub: EventHub):
        self.hub = hub

    def namespace_updated(self, namespace: str, payload: Optional[Dict[str, Any]] = None) -> int:
        return self.hub.broadcast_to_namespace(namespace, EventType.NAMESPACE_UPDATED, {"payload": payload or {}})

    def namespace_invalidated(self, namespace: str) -> int:
        return self.hub.broadcast_to_namespace(namespace, EventType.NAMESPACE_INVALIDATED)

    def system_warning(self, text: str) -> int:
        return self.hub.broadcast_system("warning", text)

    def force_broadcast(self, namespace: str, reason: str = "manual refresh") -> int:
        """Announce a namespace update without touching the cache. Safe to repeat."""
        logger.info(f"Forced broadcast for {namespace}: {reason}")
        return self.namespace_updated(namespace, {"forced": True, "reason": reason})
