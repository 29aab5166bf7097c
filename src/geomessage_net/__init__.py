"""UDP-broadcast Geomessage exchange for tactical mapping clients."""

__version__ = "1.0.0"
