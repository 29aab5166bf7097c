"""Tests for the codec module."""

import pytest

from geomessage_net.codec import (
    MAX_PAYLOAD_BYTES,
    Decoder,
    decode,
    encode,
    inbound_type_name,
    outbound_type_name,
    parse_envelope,
)
from geomessage_net.errors import WireDecodeError, WireEncodeError
from geomessage_net.models import Geomessage

E3_PAYLOAD = (
    '<geomessages><geomessage v="1.0"><_id>A</_id>'
    "<uniquedesignation>3A1-001</uniquedesignation></geomessage>"
    '<geomessage v="1.0"><_id>B</_id>'
    "<uniquedesignation>3A2-002</uniquedesignation></geomessage></geomessages>"
)


def _message(**fields) -> Geomessage:
    return Geomessage(id="msg-1", fields={"_type": "chemlight", **fields})


class TestEncode:
    """Tests for :func:`encode`."""

    def test_envelope_shape(self) -> None:
        """Records are wrapped in geomessages with a version attribute and _id first."""
        payload = encode([_message(color="1")])
        assert payload.startswith(b'<geomessages><geomessage v="1.0"><_id>msg-1</_id>')
        assert b"<_type>chemlight</_type>" in payload
        assert b"<color>1</color>" in payload
        assert payload.endswith(b"</geomessage></geomessages>")

    def test_escapes_markup(self) -> None:
        """Angle brackets and ampersands in values are escaped."""
        payload = encode([_message(additionalinformation="a < b & c")])
        assert b"a &lt; b &amp; c" in payload

    def test_numbers_are_written_as_text(self) -> None:
        payload = encode([_message(x=12.5, z=0)])
        assert b"<x>12.5</x>" in payload
        assert b"<z>0</z>" in payload

    def test_empty_value_is_explicit_element(self) -> None:
        payload = encode([_message(speed="")])
        assert b"<speed></speed>" in payload

    def test_external_rewrites_type(self) -> None:
        """external=True emits the spotrep/trackrep aliases."""
        message = Geomessage(id="s", fields={"_type": "spot_report"})
        assert b"<_type>spotrep</_type>" in encode([message], external=True)
        assert b"<_type>spot_report</_type>" in encode([message])

    def test_non_scalar_value_rejected(self) -> None:
        with pytest.raises(WireEncodeError):
            encode([_message(points=[1, 2])])

    def test_illegal_character_rejected(self) -> None:
        with pytest.raises(WireEncodeError):
            encode([_message(additionalinformation="bell\x07")])

    def test_invalid_field_name_rejected(self) -> None:
        with pytest.raises(WireEncodeError):
            encode([Geomessage(id="a", fields={"bad name": "x"})])


class TestDecode:
    """Tests for :func:`decode` and :func:`parse_envelope`."""

    def test_round_trip(self) -> None:
        """decode(encode([R])) gives back R's fields."""
        original = _message(
            _wkid="4326",
            _control_points="12.0,34.0",
            _action="UPDATE",
            uniquedesignation="3A1-001",
        )
        (decoded,) = decode(encode([original]))
        assert decoded.id == original.id
        assert decoded.fields == original.fields

    def test_round_trip_keeps_carriage_returns(self) -> None:
        original = _message(additionalinformation="a\r\nb", remarks="\r")
        payload = encode([original])
        assert b"&#13;" in payload
        (decoded,) = decode(payload)
        assert decoded.get("additionalinformation") == "a\r\nb"
        assert decoded.get("remarks") == "\r"

    def test_multiple_records_in_document_order(self) -> None:
        """An envelope of N records decodes to N Geomessages in order (E3)."""
        messages = decode(E3_PAYLOAD)
        assert [m.id for m in messages] == ["A", "B"]
        assert messages[1].get("uniquedesignation") == "3A2-002"

    def test_trackrep_normalized(self) -> None:
        """Inbound trackrep becomes position_report."""
        payload = b'<geomessages><geomessage v="1.0"><_id>t</_id><_type>trackrep</_type></geomessage></geomessages>'
        (message,) = decode(payload)
        assert message.get("_type") == "position_report"

    def test_message_children_and_missing_root(self) -> None:
        """Sibling <message> records with no envelope are accepted."""
        payload = b"<message><_id>1</_id></message><message><_id>2</_id></message>"
        assert [m.id for m in decode(payload)] == ["1", "2"]

    def test_declaration_before_bare_records(self) -> None:
        payload = b'<?xml version="1.0"?><geomessage><_id>1</_id></geomessage><geomessage><_id>2</_id></geomessage>'
        assert [m.id for m in decode(payload)] == ["1", "2"]

    def test_nested_records_found(self) -> None:
        payload = b"<outer><inner><geomessage><_id>deep</_id></geomessage></inner></outer>"
        assert [m.id for m in decode(payload)] == ["deep"]

    def test_empty_field(self) -> None:
        payload = b"<geomessages><geomessage><_id>a</_id><speed/></geomessage></geomessages>"
        (message,) = decode(payload)
        assert message.get("speed") == ""

    def test_uppercase_id_element(self) -> None:
        payload = b"<geomessages><geomessage><_ID>a</_ID></geomessage></geomessages>"
        (message,) = decode(payload)
        assert message.id == "a"

    def test_cdata_and_entities_accumulate(self) -> None:
        """Text split across entities and CDATA is kept whole."""
        payload = (
            b"<geomessages><geomessage><_id>a</_id>"
            b"<additionalinformation>one &amp; <![CDATA[two]]> three</additionalinformation>"
            b"</geomessage></geomessages>"
        )
        (message,) = decode(payload)
        assert message.get("additionalinformation") == "one & two three"

    @pytest.mark.parametrize(
        "payload",
        [
            b"not xml at all",
            b"<unclosed>",
            b"<other><thing>1</thing></other>",
            b"",
            b'<?xml version="1.0" encoding="bogus-enc"?><geomessages><geomessage><_id>a</_id></geomessage></geomessages>',
            b'<?xml version="1.0" encoding="shift_jis"?><geomessages><geomessage><_id>a</_id></geomessage></geomessages>',
        ],
    )
    def test_malformed_yields_empty(self, payload: bytes) -> None:
        """Non-XML or XML with no records decodes to [] without raising."""
        assert decode(payload) == []

    def test_parse_envelope_raises(self) -> None:
        with pytest.raises(WireDecodeError):
            parse_envelope(b"<a><b></a>")

    def test_decoder_counts_errors(self) -> None:
        decoder = Decoder()
        decoder.decode(b"garbage <")
        decoder.decode(b'<?xml version="1.0" encoding="bogus-enc"?><geomessages/>')
        decoder.decode(E3_PAYLOAD)
        assert decoder.error_count == 2


def test_type_alias_helpers() -> None:
    assert inbound_type_name("spotrep") == "spot_report"
    assert inbound_type_name("chemlight") == "chemlight"
    assert outbound_type_name("position_report") == "trackrep"
    assert outbound_type_name(None) is None


def test_payload_limit_constant() -> None:
    assert MAX_PAYLOAD_BYTES == 6000
