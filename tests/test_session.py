import asyncio

import pytest

from conftest import TEST_SCRYPT_N
from tapquest_core.backup import BackupCodec
from tapquest_core.config import Settings
from tapquest_core.crypto import ed25519_generate
from tapquest_core.directory import InMemoryDirectory, Location, Person
from tapquest_core.errors import (
    AuthenticationFailure,
    ConflictFailure,
    FatalRegistrationFailure,
    NotLoggedIn,
    TransportTransientError,
)
from tapquest_core.session import Session
from tapquest_core.signatures import SignatureVerifier
from tapquest_core.storage import InMemoryStorage, SQLiteStorage
from tapquest_core.tap import ValidLocation, ValidPerson
from tapquest_core.transport.transport_base import QRCodeRecord
from tapquest_core.transport.transport_local import LocalAdapter
from tapquest_core.utils import b64e


def _directory():
    directory = InMemoryDirectory()
    priv, pub = ed25519_generate()
    loc = Location(id="loc-1", name="Fountain", signature_public_key=pub.hex())
    directory.register("chip-loc", loc)
    directory.register_location_key(loc.id, b64e(priv))
    directory.register("chip-grace", Person(id="p-grace", display_name="Grace",
                                            encryption_public_key="enc", signature_public_key="sig"))
    return directory


def _session(transport=None, storage=None, directory=None):
    return Session(
        transport or LocalAdapter(),
        directory or _directory(),
        storage or InMemoryStorage(),
        SignatureVerifier(allow_mock_refs=True),
        BackupCodec(n=TEST_SCRYPT_N),
    )


def test_register_then_login_on_new_device():
    transport = LocalAdapter()
    directory = _directory()

    async def flow():
        phone = _session(transport, directory=directory)
        await phone.register("ada@example.com", "Ada", password="pw")
        await phone.tap_cmac({"mockRef": "chip-loc"})

        laptop = _session(transport, directory=directory)
        report = await laptop.login("ada@example.com", "pw")
        return phone, laptop, report

    phone, laptop, report = asyncio.run(flow())

    assert laptop.state.logged_in
    assert laptop.state.keys == phone.state.keys
    assert laptop.state.profile.display_name == "Ada"
    assert list(laptop.state.activity_log) == list(phone.state.activity_log)
    assert "loc-1" in laptop.state.location_signatures
    # the registered event came from the backup, the visit from the relay
    assert len(report.applied) == 1
    assert sorted(e.kind for e in laptop.state.activity_log.values()) == ["location_tap", "registered"]


def test_register_persists_state_and_backup():
    transport = LocalAdapter()
    storage = InMemoryStorage()
    session = _session(transport, storage)

    asyncio.run(session.register("ada@example.com", "Ada", password="pw"))

    assert storage.load_state().keys == session.state.keys
    assert len(transport.accounts["ada@example.com"].backups) == 1
    assert [e.event_type for e in storage.list_events()] == ["registered"]
    # a restarted session picks the state back up
    assert _session(transport, storage).state.logged_in


def test_registration_rolls_back_when_first_message_is_undeliverable(monkeypatch):
    transport = LocalAdapter()
    storage = InMemoryStorage()
    session = _session(transport, storage)

    def down(token, messages):
        raise TransportTransientError("relay down", 503)

    monkeypatch.setattr(transport, "post_messages", down)

    with pytest.raises(FatalRegistrationFailure):
        asyncio.run(session.register("ada@example.com", "Ada", password="pw"))

    assert not session.state.logged_in
    assert storage.load_state() is None
    assert [e.event_type for e in storage.list_events()] == ["registration_rolled_back"]


def test_register_rejects_bad_display_name():
    session = _session()
    for name in ("", "has space", "x" * 21, "émile"):
        with pytest.raises(ValueError):
            asyncio.run(session.register("ada@example.com", name, password="pw"))


def test_login_with_wrong_password():
    transport = LocalAdapter()

    async def flow():
        await _session(transport).register("ada@example.com", "Ada", password="pw")
        await _session(transport).login("ada@example.com", "wrong")

    with pytest.raises(AuthenticationFailure):
        asyncio.run(flow())


def test_custodial_account_logs_in_without_password():
    transport = LocalAdapter()

    async def flow():
        await _session(transport).register("ada@example.com", "Ada", wants_server_custody=True)
        laptop = _session(transport)
        await laptop.login("ada@example.com")
        return laptop

    laptop = asyncio.run(flow())
    assert transport.accounts["ada@example.com"].backups[-1].custodial
    assert laptop.state.logged_in


def test_second_location_tap_is_a_duplicate_visit():
    session = _session()

    async def flow():
        await session.register("ada@example.com", "Ada", password="pw")
        first = await session.tap_cmac({"mockRef": "chip-loc"})
        second = await session.tap_cmac({"mockRef": "chip-loc"})
        with pytest.raises(ConflictFailure) as exc:
            await session.record_tap(first)
        return first, second, exc.value

    first, second, conflict = asyncio.run(flow())

    assert isinstance(first, ValidLocation) and first.fresh_tap is not None
    assert second.already_visited
    assert second.existing_signature == session.state.location_signatures["loc-1"]
    assert conflict.code == ConflictFailure.ALREADY_VISITED
    kinds = [e.kind for e in session.state.ordered_activities()]
    assert kinds.count("location_tap") == 1


def test_concurrent_location_taps_record_one_visit():
    session = _session()

    async def flow():
        await session.register("ada@example.com", "Ada", password="pw")
        return await asyncio.gather(*[session.tap_cmac({"mockRef": "chip-loc"}) for _ in range(4)])

    outcomes = asyncio.run(flow())

    assert sum(not o.already_visited for o in outcomes) == 1
    assert [e.kind for e in session.state.ordered_activities()].count("location_tap") == 1


def test_person_tap_records_peer():
    session = _session()

    async def flow():
        await session.register("ada@example.com", "Ada", password="pw")
        return await session.tap_cmac({"mockRef": "chip-grace"})

    outcome = asyncio.run(flow())

    assert isinstance(outcome, ValidPerson)
    assert session.state.users["p-grace"].display_name == "Grace"


def test_tap_while_logged_out_only_classifies():
    session = _session()

    async def flow():
        outcome = await session.tap_cmac({"mockRef": "chip-loc"})
        with pytest.raises(NotLoggedIn):
            await session.record_tap(outcome)
        return outcome

    outcome = asyncio.run(flow())
    assert isinstance(outcome, ValidLocation)
    assert session.state.activity_log == {}


def test_operations_require_login():
    session = _session()
    with pytest.raises(NotLoggedIn):
        asyncio.run(session.sync())
    with pytest.raises(NotLoggedIn):
        asyncio.run(session.redeem("qr-1"))
    with pytest.raises(NotLoggedIn):
        asyncio.run(session.update_profile(display_name="Bob"))


def test_redeem_through_session():
    transport = LocalAdapter()

    async def flow():
        owner = _session(transport)
        await owner.register("owner@example.com", "Owner", password="pw")
        transport.add_qr_code(QRCodeRecord(id="qr-1", item_id="item-1", item_name="Sticker",
                                           owner_encryption_public_key=owner.state.keys.encryption_public_key))
        buyer = _session(transport)
        await buyer.register("buyer@example.com", "Buyer", password="pw")
        results = await asyncio.gather(buyer.redeem("qr-1"), buyer.redeem("qr-1"))
        await owner.sync()
        return owner, results

    owner, results = asyncio.run(flow())

    assert sorted(r.success for r in results) == [False, True]
    assert "qr-1" in owner.state.redeemed_items


def test_update_profile():
    transport = LocalAdapter()
    session = _session(transport)

    async def flow():
        await session.register("ada@example.com", "Ada", password="pw")
        with pytest.raises(ValueError):
            await session.update_profile(display_name="not valid!")
        await session.update_profile(display_name="Ada2", allows_analytics=True)
        await session.update_profile(wants_server_custody=True)

    asyncio.run(flow())

    server_profile = transport.accounts["ada@example.com"].profile
    assert session.state.profile.display_name == "Ada2"
    assert server_profile.display_name == "Ada2"
    assert server_profile.allows_analytics
    assert transport.accounts["ada@example.com"].backups[-1].custodial


def test_logout_clears_storage(tmp_path):
    storage = SQLiteStorage(str(tmp_path / "state.db"))
    session = _session(storage=storage)
    asyncio.run(session.register("ada@example.com", "Ada", password="pw"))
    assert storage.load_state() is not None

    session.logout()

    assert storage.load_state() is None
    assert not session.state.logged_in
    session.close()


def test_from_settings_builds_local_session(tmp_path):
    settings = Settings(storage_provider="sqlite", db_path=str(tmp_path / "s.db"), scrypt_n=TEST_SCRYPT_N)
    session = Session.from_settings(settings)

    assert isinstance(session.transport, LocalAdapter)
    assert isinstance(session.storage, SQLiteStorage)
    assert session.codec.n == TEST_SCRYPT_N
    assert not session.state.logged_in
    session.close()
