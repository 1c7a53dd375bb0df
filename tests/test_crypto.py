import base64

import pytest

from ourdm_sync.core.settings import Settings
from ourdm_sync.services.crypto import (
    ENCRYPTION_KEY_SETTING,
    UNREADABLE_KEY_SETTING,
    EncryptionBoundary,
    decode_key,
    encode_key,
    import_key,
    load_boundary,
)
from ourdm_sync.services.errors import DecryptionError, EncryptionError


def test_seal_then_open_returns_plaintext(boundary):
    ciphertext, iv = boundary.seal("héllo")

    assert ciphertext != "héllo"
    assert len(base64.b64decode(iv)) == 12
    assert boundary.open(ciphertext, iv) == "héllo"


def test_each_seal_uses_a_fresh_iv(boundary):
    first = boundary.seal("same")
    second = boundary.seal("same")

    assert first[1] != second[1]
    assert first[0] != second[0]


def test_tampered_ciphertext_fails(boundary):
    ciphertext, iv = boundary.seal("hello")
    raw = bytearray(base64.b64decode(ciphertext))
    raw[0] ^= 0x01

    with pytest.raises(DecryptionError):
        boundary.open(base64.b64encode(bytes(raw)).decode(), iv)


def test_wrong_key_fails(boundary):
    ciphertext, iv = boundary.seal("hello")
    other = EncryptionBoundary(EncryptionBoundary.generate_key())

    with pytest.raises(DecryptionError):
        other.open(ciphertext, iv)


@pytest.mark.parametrize(
    "ciphertext, iv",
    [("not base64!", "AAAAAAAAAAAAAAAA"), ("AAAA", "AAAA")],
)
def test_malformed_payload_fails(boundary, ciphertext, iv):
    with pytest.raises(DecryptionError):
        boundary.open(ciphertext, iv)


def test_missing_key():
    keyless = EncryptionBoundary()

    with pytest.raises(EncryptionError):
        keyless.seal("hello")
    with pytest.raises(DecryptionError):
        keyless.open("AAAA", "AAAAAAAAAAAAAAAA")


def test_key_encoding_round_trip():
    key = EncryptionBoundary.generate_key()

    assert decode_key(encode_key(key)) == key
    with pytest.raises(ValueError):
        decode_key(encode_key(b"short"))


def test_load_boundary_generates_and_persists_key(metadata_backend):
    config = Settings(encryption_key=None)

    first = load_boundary(metadata_backend, config)
    second = load_boundary(metadata_backend, config)

    assert metadata_backend.get(ENCRYPTION_KEY_SETTING) == first.export_key()
    assert second.export_key() == first.export_key()


def test_load_boundary_prefers_configured_key(metadata_backend):
    key = encode_key(EncryptionBoundary.generate_key())

    boundary = load_boundary(metadata_backend, Settings(encryption_key=key))

    assert boundary.export_key() == key
    assert metadata_backend.get(ENCRYPTION_KEY_SETTING) is None


def test_load_boundary_without_create_has_no_key(metadata_backend):
    boundary = load_boundary(metadata_backend, Settings(encryption_key=None), create=False)

    assert boundary.has_key is False


def test_import_key_replaces_stored_key(metadata_backend):
    load_boundary(metadata_backend, Settings(encryption_key=None))
    restored = encode_key(EncryptionBoundary.generate_key())

    boundary = import_key(metadata_backend, restored)

    assert metadata_backend.get(ENCRYPTION_KEY_SETTING) == restored
    assert boundary.export_key() == restored


def test_unreadable_stored_key_is_kept_aside(metadata_backend):
    metadata_backend.set(ENCRYPTION_KEY_SETTING, "not-a-key")

    boundary = load_boundary(metadata_backend, Settings(encryption_key=None))

    assert metadata_backend.get(UNREADABLE_KEY_SETTING) == "not-a-key"
    assert metadata_backend.get(ENCRYPTION_KEY_SETTING) == boundary.export_key()
