"""Exceptions raised by the Geomessage messaging subsystem."""


class GeomessageError(Exception):
    """Base exception for all Geomessage errors."""


class WireDecodeError(GeomessageError):
    """Raised when a datagram payload is not a well-formed envelope.

    Never surfaces to listeners: :func:`geomessage_net.codec.decode` turns it
    into an empty result.
    """


class WireEncodeError(GeomessageError):
    """Raised when a record cannot be serialized to the wire envelope."""


class PayloadTooLargeError(WireEncodeError):
    """Raised when an encoded payload exceeds the datagram limit."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"payload is {size} bytes, limit is {limit}")


class TransportError(GeomessageError, OSError):
    """Raised when the local socket rejects a datagram."""


class FieldParseError(GeomessageError, ValueError):
    """Raised when a record field holds an unparseable number."""

    def __init__(self, field_name: str, value: object):
        self.field_name = field_name
        self.value = value
        super().__init__(f"cannot parse {field_name}={value!r}")


class ConfigError(GeomessageError, ValueError):
    """Raised for invalid configuration or a pump enabled without identity."""
