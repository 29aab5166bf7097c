"""Self-suppression of this process's own high-frequency Geomessages.

A process hears its own broadcasts.  For periodic types (position reports)
that echo would render the sender twice, so it is dropped.  Edit-like types
(spot reports, chem lights, removals) still loop back.

Rule chain (evaluated in order)::

    1. ``_type`` (raw or alias-normalized) not in ``self_ignore_types`` → deliver
    2. send-side loopback                                               → drop
    3. ``sender_identity`` unset                                        → deliver
    4. ``uniquedesignation`` ≠ ``sender_identity``                      → deliver
    5. Otherwise                                                        → drop
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from geomessage_net.codec import inbound_type_name
from geomessage_net.models import Geomessage

logger = logging.getLogger(__name__)

DEFAULT_SELF_IGNORE_TYPES = frozenset({"trackrep", "position_report"})


class SelfSuppressionPolicy:
    """Decides whether a locally produced record reaches local listeners."""

    def __init__(
        self,
        sender_identity: Optional[str] = None,
        self_ignore_types: Optional[Iterable[str]] = None,
    ) -> None:
        self.sender_identity = sender_identity or None
        self.self_ignore_types = (
            DEFAULT_SELF_IGNORE_TYPES
            if self_ignore_types is None
            else frozenset(self_ignore_types)
        )

    def _is_ignored_type(self, message: Geomessage) -> bool:
        raw_type = message.type
        return (
            raw_type in self.self_ignore_types
            or inbound_type_name(raw_type) in self.self_ignore_types
        )

    def allow_received(self, message: Geomessage) -> bool:
        """Return True if a record received from the network should be delivered."""
        if not self._is_ignored_type(message):
            return True
        if self.sender_identity is None:
            return True
        if message.get("uniquedesignation") != self.sender_identity:
            return True
        logger.debug("Suppressed own %s %s", message.type, message.id)
        return False

    def allow_loopback(self, message: Geomessage) -> bool:
        """Return True if a record this process just sent should be delivered locally."""
        return not self._is_ignored_type(message)
