from datetime import datetime, timedelta, timezone

import pytest

from tapquest_core.backup import BackupCodec
from tapquest_core.state import AuthToken, KeyPair, LocalState, Profile

# scrypt at full strength makes every test take a second
TEST_SCRYPT_N = 2 ** 10


@pytest.fixture
def codec():
    return BackupCodec(n=TEST_SCRYPT_N)


def make_state(display_name="Ada", email="ada@example.com", token="test-token"):
    keys = KeyPair.generate()
    profile = Profile(
        display_name=display_name,
        email=email,
        encryption_public_key=keys.encryption_public_key,
        signature_public_key=keys.signature_public_key,
    )
    auth = AuthToken(value=token, expires_at=datetime.now(timezone.utc) + timedelta(days=1))
    return LocalState(auth_token=auth, keys=keys, profile=profile)


@pytest.fixture
def state():
    return make_state()
