"""Tests for the self-suppression policy."""

from geomessage_net.models import Geomessage
from geomessage_net.policy import DEFAULT_SELF_IGNORE_TYPES, SelfSuppressionPolicy


def _report(designation: str, type_name: str = "position_report") -> Geomessage:
    return Geomessage(
        id="uid-1", fields={"_type": type_name, "uniquedesignation": designation}
    )


def test_own_position_report_suppressed() -> None:
    """A received position report carrying our identity is dropped."""
    policy = SelfSuppressionPolicy("alpha", {"position_report"})
    assert policy.allow_received(_report("alpha")) is False


def test_other_senders_delivered() -> None:
    policy = SelfSuppressionPolicy("alpha", {"position_report"})
    assert policy.allow_received(_report("bravo")) is True


def test_other_types_delivered() -> None:
    """Types outside the ignore set are delivered even from ourselves."""
    policy = SelfSuppressionPolicy("alpha", {"position_report"})
    assert policy.allow_received(_report("alpha", "chemlight")) is True


def test_alias_matches_ignore_set() -> None:
    """trackrep is treated as position_report."""
    policy = SelfSuppressionPolicy("alpha", {"position_report"})
    assert policy.allow_received(_report("alpha", "trackrep")) is False


def test_no_identity_suppresses_nothing_on_receive() -> None:
    policy = SelfSuppressionPolicy()
    assert policy.allow_received(_report("alpha")) is True


def test_loopback_follows_type_only() -> None:
    policy = SelfSuppressionPolicy()
    assert policy.self_ignore_types == DEFAULT_SELF_IGNORE_TYPES
    assert policy.allow_loopback(_report("anyone")) is False
    assert policy.allow_loopback(_report("anyone", "chemlight")) is True


def test_empty_ignore_set() -> None:
    policy = SelfSuppressionPolicy("alpha", [])
    assert policy.allow_received(_report("alpha")) is True
    assert policy.allow_loopback(_report("alpha")) is True
