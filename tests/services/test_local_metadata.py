import pytest

from ourdm_sync.services.local_metadata import LocalMetadataManager, pinned_key


@pytest.mark.asyncio
async def test_pin_cap_is_silent_noop(metadata, delivery):
    ids = [(await delivery.send("c1", "u1", "u2", f"m{i}")).message.id for i in range(4)]
    for message_id in ids[:3]:
        assert metadata.pin("c1", message_id) is True

    assert metadata.can_pin("c1") is False
    assert metadata.pin("c1", ids[3]) is False
    assert metadata.pinned_ids("c1") == ids[:3]


def test_pins_are_scoped_per_chat(metadata):
    for i in range(3):
        metadata.pin("c1", f"a{i}")

    assert metadata.pin("c2", "b0") is True
    assert metadata.pinned_ids("c2") == ["b0"]


def test_repinning_is_idempotent(metadata):
    metadata.pin("c1", "m1")
    metadata.pin("c1", "m1")

    assert metadata.pinned_ids("c1") == ["m1"]


def test_unpin_and_unstar_absent_ids_are_noops(metadata):
    metadata.unpin("c1", "never-pinned")
    metadata.unstar("never-starred")

    assert metadata.pinned_ids("c1") == []
    assert metadata.starred_ids() == []


@pytest.mark.asyncio
async def test_starred_and_pinned_messages_skip_deleted(metadata, delivery, reconciler):
    keep = (await delivery.send("c1", "u1", "u2", "keep")).message
    gone = (await delivery.send("c1", "u1", "u2", "gone")).message
    for message in (keep, gone):
        metadata.star(message.id)
        metadata.pin("c1", message.id)
    await reconciler.delete(gone.id, "u1", "me")

    assert [m.id for m in metadata.starred_messages()] == [keep.id]
    assert [m.id for m in metadata.pinned_messages("c1")] == [keep.id]
    assert metadata.is_starred(gone.id) is True


def test_state_survives_a_new_manager(metadata, metadata_backend, test_settings):
    metadata.star("m1")
    metadata.pin("c1", "m2")
    metadata.set_disappearing("c1", 86400)

    reopened = LocalMetadataManager(metadata_backend, config=test_settings)

    assert reopened.starred_ids() == ["m1"]
    assert reopened.is_pinned("c1", "m2") is True
    assert reopened.get_disappearing("c1") == 86400
    assert metadata_backend.get(pinned_key("c1")) == ["m2"]


def test_disappearing_timer_can_be_turned_off(metadata):
    metadata.set_disappearing("c1", 60)
    metadata.set_disappearing("c1", None)

    assert metadata.get_disappearing("c1") is None


def test_negative_disappearing_duration_is_rejected(metadata):
    with pytest.raises(ValueError):
        metadata.set_disappearing("c1", -5)
