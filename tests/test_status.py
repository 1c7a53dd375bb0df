import pytest

from ourdm_sync.services.status import can_transition, is_at_or_past, path_to


@pytest.mark.parametrize(
    "current, target",
    [
        ("pending", "sent"),
        ("pending", "failed"),
        ("pending", "scheduled"),
        ("failed", "pending"),
        ("scheduled", "pending"),
        ("sent", "delivered"),
        ("delivered", "read"),
    ],
)
def test_allowed_edges(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current, target",
    [("sent", "read"), ("read", "delivered"), ("failed", "sent"), ("delivered", "pending")],
)
def test_forbidden_edges(current, target):
    assert not can_transition(current, target)


def test_path_to_never_skips_delivered():
    assert path_to("sent", "read") == ["delivered", "read"]
    assert path_to("pending", "delivered") == ["sent", "delivered"]
    assert path_to("read", "delivered") == []
    assert path_to("failed", "read") == []


def test_is_at_or_past():
    assert is_at_or_past("read", "delivered")
    assert not is_at_or_past("sent", "delivered")
