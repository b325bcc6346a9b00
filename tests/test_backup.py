import json

import pytest

from tapquest_core.backup import BackupBlob
from tapquest_core.errors import AuthenticationFailure
from tapquest_core.message_log import fold, registered_event
from tapquest_core.utils import b64d, b64e


def _flip(b64: str, bit: int) -> str:
    raw = bytearray(b64d(b64))
    raw[bit // 8] ^= 1 << (bit % 8)
    return b64e(bytes(raw))


def test_encrypt_decrypt_roundtrip(codec):
    plaintext = json.dumps({"hello": "wörld", "n": [1, 2, 3]})
    blob = codec.encrypt(plaintext, "ada@example.com", "hunter2")

    assert codec.decrypt(blob.encrypted_data, blob.authentication_tag, blob.iv,
                         "ada@example.com", "hunter2") == plaintext
    assert len(b64d(blob.iv)) == 12
    assert len(b64d(blob.authentication_tag)) == 16


def test_fresh_iv_per_call(codec):
    a = codec.encrypt("same", "id", "pw")
    b = codec.encrypt("same", "id", "pw")
    assert a.iv != b.iv
    assert a.encrypted_data != b.encrypted_data


@pytest.mark.parametrize("bit", [0, 7, 13, 100])
def test_ciphertext_bit_flip_fails(codec, bit):
    blob = codec.encrypt("x" * 32, "id", "pw")
    with pytest.raises(AuthenticationFailure):
        codec.decrypt(_flip(blob.encrypted_data, bit), blob.authentication_tag, blob.iv, "id", "pw")


@pytest.mark.parametrize("bit", [0, 64, 127])
def test_tag_bit_flip_fails(codec, bit):
    blob = codec.encrypt("payload", "id", "pw")
    with pytest.raises(AuthenticationFailure):
        codec.decrypt(blob.encrypted_data, _flip(blob.authentication_tag, bit), blob.iv, "id", "pw")


def test_wrong_password_or_identifier_fails(codec):
    blob = codec.encrypt("payload", "id", "pw")
    with pytest.raises(AuthenticationFailure):
        codec.decrypt(blob.encrypted_data, blob.authentication_tag, blob.iv, "id", "PW")
    with pytest.raises(AuthenticationFailure):
        codec.decrypt(blob.encrypted_data, blob.authentication_tag, blob.iv, "other", "pw")


@pytest.mark.parametrize("field, value", [
    ("authentication_tag", "AAAA"),
    ("iv", "AAAA"),
    ("encrypted_data", "not base64!"),
])
def test_malformed_blob_fails(codec, field, value):
    parts = codec.encrypt("payload", "id", "pw").__dict__.copy()
    parts[field] = value
    with pytest.raises(AuthenticationFailure):
        codec.decrypt(parts["encrypted_data"], parts["authentication_tag"], parts["iv"], "id", "pw")


def test_password_verifier(codec):
    verifier = codec.make_password_verifier("hunter2")
    assert codec.check_password("hunter2", verifier)
    assert not codec.check_password("hunter3", verifier)
    # A verifier never doubles as the backup key
    assert verifier.hash != codec.derive_key("hunter2", bytes.fromhex(verifier.salt)).hex()


def test_self_custody_backup_roundtrip(codec, state):
    state, _, _ = fold(state, [registered_event(state.keys, "Ada")])
    blob = codec.create_backup(state, custodial=False, password="pw")

    assert not blob.custodial
    assert state.keys.encryption_private_key not in blob.encrypted_data

    restored = codec.load_backup(blob, "ada@example.com", "pw", auth_token=state.auth_token)
    assert restored.keys == state.keys
    assert restored.profile == state.profile
    assert list(restored.activity_log) == list(state.activity_log)


def test_backup_never_carries_auth_token(codec, state):
    blob = codec.create_backup(state, custodial=True)
    assert blob.custodial
    assert state.auth_token.value not in blob.encrypted_data

    restored = codec.load_backup(blob, "ada@example.com")
    assert restored.auth_token is None
    assert restored.keys == state.keys


def test_self_custody_backup_requires_password(codec, state):
    with pytest.raises(ValueError):
        codec.create_backup(state, custodial=False)

    blob = codec.create_backup(state, custodial=False, password="pw")
    with pytest.raises(AuthenticationFailure):
        codec.load_backup(blob, "ada@example.com", None)


def test_blob_wire_names():
    blob = BackupBlob(encrypted_data="ct", authentication_tag="tag", iv="iv")
    assert blob.to_dict() == {"encryptedData": "ct", "authenticationTag": "tag", "iv": "iv"}
    assert BackupBlob.from_dict({"encryptedData": "ct"}).custodial
