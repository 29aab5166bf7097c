"""Encode Geomessages to the wire envelope and decode received datagrams.

Wire form::

    <geomessages>
      <geomessage v="1.0">
        <_id>…</_id>
        <_type>…</_type>
        <field>value</field> …
      </geomessage> …
    </geomessages>

Decode pipeline::

    raw bytes
      │
      ├─ not well-formed XML        → retry wrapped in <geomessages>
      │                                └─ still malformed → []  (logged, counted)
      ├─ no geomessage/message elem → []
      └─ one Geomessage per record element, in document order,
         with inbound type aliases rewritten
"""

from __future__ import annotations

import io
import logging
import re
import xml.etree.ElementTree as ET
from numbers import Number
from typing import Iterable, Optional, Union
from xml.sax.saxutils import XMLGenerator

from geomessage_net.errors import WireDecodeError, WireEncodeError
from geomessage_net.models import ID_FIELD_NAME, TYPE_FIELD_NAME, Geomessage

logger = logging.getLogger(__name__)

# Datagram size limit shared by senders and the receive buffer.
MAX_PAYLOAD_BYTES = 6000

ENVELOPE_TAG = "geomessages"
RECORD_TAG = "geomessage"
ENVELOPE_VERSION = "1.0"
RECORD_TAGS = frozenset({"geomessage", "message"})

INBOUND_TYPE_ALIASES = {
    "trackrep": "position_report",
    "spotrep": "spot_report",
}
OUTBOUND_TYPE_ALIASES = {v: k for k, v in INBOUND_TYPE_ALIASES.items()}

_ILLEGAL_XML_CHARS = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")
_FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")
_XML_DECLARATION_RE = re.compile(rb"^\s*<\?xml[^>]*\?>")
# expat raises these for unknown or multi-byte declared encodings
_ENCODING_ERRORS = (LookupError, ValueError)
_PARSE_ERRORS = (ET.ParseError,) + _ENCODING_ERRORS


def inbound_type_name(type_name: Optional[str]) -> Optional[str]:
    """Map an external type alias (``trackrep``, ``spotrep``) to its canonical name."""
    return INBOUND_TYPE_ALIASES.get(type_name, type_name)


def outbound_type_name(type_name: Optional[str]) -> Optional[str]:
    """Map a canonical type name to the alias the external adapter expects."""
    return OUTBOUND_TYPE_ALIASES.get(type_name, type_name)


# ── encoding ────────────────────────────────────────────────────────


def encode(messages: Iterable[Geomessage], external: bool = False) -> bytes:
    """Serialize *messages* into one UTF-8 envelope.

    Parameters
    ----------
    messages:
        Records to place in the envelope, in order.
    external:
        Rewrite ``_type`` to the external dialect (``position_report`` →
        ``trackrep``, ``spot_report`` → ``spotrep``).

    Raises
    ------
    WireEncodeError
        If a field name is not a valid element name, a value is not a text
        scalar, or a value contains characters XML cannot carry.
    """
    buf = io.BytesIO()
    gen = XMLGenerator(buf, encoding="utf-8", short_empty_elements=False)
    gen.startElement(ENVELOPE_TAG, {})
    for message in messages:
        gen.startElement(RECORD_TAG, {"v": ENVELOPE_VERSION})
        if message.id is not None:
            _write_field(gen, ID_FIELD_NAME, message.id)
        for name, value in message.fields.items():
            if name == ID_FIELD_NAME:
                continue
            if external and name == TYPE_FIELD_NAME:
                value = outbound_type_name(value)
            _write_field(gen, name, value)
        gen.endElement(RECORD_TAG)
    gen.endElement(ENVELOPE_TAG)
    return buf.getvalue()


def _write_field(gen: XMLGenerator, name: str, value: object) -> None:
    if not isinstance(name, str) or not _FIELD_NAME_RE.match(name):
        raise WireEncodeError(f"Invalid field name: {name!r}")
    text = _to_text(name, value)
    if _ILLEGAL_XML_CHARS.search(text):
        raise WireEncodeError(f"Field {name!r} contains characters illegal in XML")
    gen.startElement(name, {})
    # Parsers normalize a literal CR to LF
    for i, chunk in enumerate(text.split("\r")):
        if i:
            gen.ignorableWhitespace("&#13;")
        gen.characters(chunk)
    gen.endElement(name)


def _to_text(name: str, value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, Number):
        return str(value)
    raise WireEncodeError(
        f"Field {name!r} has non-scalar value of type {type(value).__name__}"
    )


# ── decoding ────────────────────────────────────────────────────────


def parse_envelope(payload: Union[str, bytes]) -> list[Geomessage]:
    """Parse *payload* strictly.

    Raises
    ------
    WireDecodeError
        If the payload is not well-formed XML, even after wrapping it in an
        envelope element.
    """
    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    try:
        root = ET.fromstring(data)
    except _ENCODING_ERRORS as exc:
        raise WireDecodeError(str(exc)) from exc
    except ET.ParseError:
        # Sibling records with the envelope omitted
        body = _XML_DECLARATION_RE.sub(b"", data, count=1)
        try:
            root = ET.fromstring(b"<" + ENVELOPE_TAG.encode() + b">" + body
                                 + b"</" + ENVELOPE_TAG.encode() + b">")
        except _PARSE_ERRORS as exc:
            raise WireDecodeError(str(exc)) from exc

    return [_to_geomessage(elem) for elem in _find_records(root)]


def _find_records(root: ET.Element) -> Iterable[ET.Element]:
    """Yield record elements in document order, not descending into a record."""
    stack = [root]
    while stack:
        elem = stack.pop()
        if _local_name(elem.tag).lower() in RECORD_TAGS:
            yield elem
        else:
            stack.extend(reversed(list(elem)))


def _to_geomessage(record: ET.Element) -> Geomessage:
    message = Geomessage()
    for child in record:
        if len(child):
            continue  # not a text field
        name = _local_name(child.tag)
        value = child.text or ""
        if name.lower() == ID_FIELD_NAME:
            message.set(ID_FIELD_NAME, value)
        else:
            message.set(name, value)
    if TYPE_FIELD_NAME in message:
        message.set(TYPE_FIELD_NAME, inbound_type_name(message.get(TYPE_FIELD_NAME)))
    return message


def _local_name(tag: object) -> str:
    if not isinstance(tag, str):
        return ""  # comments and processing instructions
    return tag.rsplit("}", 1)[-1]


class Decoder:
    """Lenient decoder that never raises and counts undecodable payloads."""

    def __init__(self) -> None:
        self.error_count = 0

    def decode(self, payload: Union[str, bytes]) -> list[Geomessage]:
        """Return the records in *payload*; ``[]`` if it is not an envelope."""
        try:
            return parse_envelope(payload)
        except WireDecodeError as exc:
            self.error_count += 1
            logger.debug("Couldn't get Geomessages from %r: %s", _preview(payload), exc)
            return []


def _preview(payload: Union[str, bytes], limit: int = 200) -> str:
    text = payload if isinstance(payload, str) else payload.decode("utf-8", errors="replace")
    return text if len(text) <= limit else text[:limit] + "…"


_default_decoder = Decoder()


def decode(payload: Union[str, bytes]) -> list[Geomessage]:
    """Decode a datagram payload into zero or more Geomessages.

    Malformed or unrelated text yields an empty list, never an exception.
    """
    return _default_decoder.decode(payload)
