import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature, encode_dss_signature

from tapquest_core.chip import HTTPChipAuthenticator, LocalCmacAuthenticator, compute_sun_mac
from tapquest_core.crypto import ed25519_generate, ed25519_sign
from tapquest_core.errors import TransportPermanentError, TransportTransientError
from tapquest_core.signatures import (
    P256_ORDER,
    P256_SCHEME,
    SECP256K1_ORDER,
    CmacInvalid,
    CmacTapResult,
    IdentityNormalizer,
    LowSNormalizer,
    SigCardScheme,
    SignatureVerifier,
    TapResponseCode,
    extract_counter_from_message,
    verify_signature,
)

MASTER_KEY = bytes(range(16))
UID = bytes.fromhex("04a1b2c3d4e5f6")


def _card(curve=ec.SECP256K1()):
    sk = ec.generate_private_key(curve)
    pub_hex = sk.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint).hex()
    return sk, pub_hex


def _raw(r, s, size=32):
    return (r.to_bytes(size, "big") + s.to_bytes(size, "big")).hex()


# ---------------------------------------------------------------------------
# Sig cards
# ---------------------------------------------------------------------------
def test_sig_card_high_s_is_normalized_and_accepted():
    sk, pub_hex = _card()
    message = "0a000000" + "ab" * 28
    r, s = decode_dss_signature(sk.sign(bytes.fromhex(message), ec.ECDSA(hashes.SHA256())))
    low_s = min(s, SECP256K1_ORDER - s)
    high_s = SECP256K1_ORDER - low_s

    result = SignatureVerifier().verify_sig_card_tap(pub_hex, message, _raw(r, high_s))

    assert result.valid
    assert result.signature == _raw(r, low_s)


def test_sig_card_accepts_der_encoding():
    sk, pub_hex = _card()
    message = "01000000" + "cd" * 28
    der = sk.sign(bytes.fromhex(message), ec.ECDSA(hashes.SHA256()))

    result = SignatureVerifier().verify_sig_card_tap(pub_hex, message, der.hex())
    assert result.valid


def test_sig_card_wrong_message_is_invalid():
    sk, pub_hex = _card()
    der = sk.sign(b"\x01\x00\x00\x00", ec.ECDSA(hashes.SHA256()))

    result = SignatureVerifier().verify_sig_card_tap(pub_hex, "02000000", der.hex())
    assert not result.valid
    assert result.signature is None


@pytest.mark.parametrize("pub, sig", [
    ("zz", "00" * 64),
    ("04" + "00" * 64, "00" * 64),
    (None, "not a signature!"),
])
def test_sig_card_malformed_input_never_raises(pub, sig):
    _, pub_hex = _card()
    result = SignatureVerifier().verify_sig_card_tap(pub or pub_hex, "01000000", sig)
    assert not result.valid


def test_identity_normalizer_leaves_high_s_alone():
    sk, pub_hex = _card()
    message = "0b000000" + "ef" * 28
    r, s = decode_dss_signature(sk.sign(bytes.fromhex(message), ec.ECDSA(hashes.SHA256())))
    high_s = max(s, SECP256K1_ORDER - s)
    scheme = SigCardScheme(curve=ec.SECP256K1(), normalizer=IdentityNormalizer())

    result = SignatureVerifier(sig_card_scheme=scheme).verify_sig_card_tap(pub_hex, message, _raw(r, high_s))

    assert result.valid
    assert result.signature == _raw(r, high_s)
    assert IdentityNormalizer().normalize(r, high_s) == (r, high_s)


def test_p256_scheme_is_pluggable():
    sk, pub_hex = _card(ec.SECP256R1())
    message = "05000000"
    r, s = decode_dss_signature(sk.sign(bytes.fromhex(message), ec.ECDSA(hashes.SHA256())))
    high = encode_dss_signature(r, max(s, P256_ORDER - s))

    assert SignatureVerifier(sig_card_scheme=P256_SCHEME).verify_sig_card_tap(pub_hex, message, high.hex()).valid
    # The same card is not a secp256k1 key
    assert not SignatureVerifier().verify_sig_card_tap(pub_hex, message, high.hex()).valid


def test_low_s_normalizer_rejects_out_of_range():
    norm = LowSNormalizer(SECP256K1_ORDER)
    with pytest.raises(ValueError):
        norm.normalize(0, 1)
    with pytest.raises(ValueError):
        norm.normalize(1, SECP256K1_ORDER)
    assert norm.normalize(5, SECP256K1_ORDER - 1) == (5, 1)


# ---------------------------------------------------------------------------
# Person / location signatures and counters
# ---------------------------------------------------------------------------
def test_verify_signature_hex_and_base64():
    priv, pub = ed25519_generate()
    message = "03000000" + "ee" * 4
    sig = ed25519_sign(priv, bytes.fromhex(message))

    assert verify_signature(pub.hex(), message, sig.hex())
    assert not verify_signature(pub.hex(), "04000000" + "ee" * 4, sig.hex())
    assert not verify_signature("not-a-key", message, sig.hex())


def test_extract_counter_from_message():
    assert extract_counter_from_message("2a000000deadbeef") == 42
    assert extract_counter_from_message("01020000") == 0x0201
    assert extract_counter_from_message("0100") is None
    assert extract_counter_from_message("zzzzzzzz") is None
    assert extract_counter_from_message(None) is None


# ---------------------------------------------------------------------------
# CMAC taps
# ---------------------------------------------------------------------------
def _picc(counter):
    return UID + counter.to_bytes(3, "little")


def test_local_cmac_tap_valid():
    picc = _picc(7)
    mac = compute_sun_mac(MASTER_KEY, picc)
    verifier = SignatureVerifier(chip_authenticator=LocalCmacAuthenticator(MASTER_KEY))

    result = verifier.verify_cmac_tap({"picc_data": picc.hex(), "cmac": mac.hex()})

    assert isinstance(result, CmacTapResult)
    assert result.valid
    assert result.chip_id == UID.hex()
    assert result.counter == 7
    assert len(mac) == 8


@pytest.mark.parametrize("params", [
    {},
    {"picc_data": "zz", "cmac": "00"},
    {"picc_data": _picc(1).hex()},
    {"picc_data": _picc(1).hex(), "cmac": "00" * 8},
    {"picc_data": "00" * 3, "cmac": "00" * 8},
])
def test_local_cmac_tap_invalid(params):
    verifier = SignatureVerifier(chip_authenticator=LocalCmacAuthenticator(MASTER_KEY))
    result = verifier.verify_cmac_tap(params)
    assert isinstance(result, CmacInvalid)
    assert result.code is TapResponseCode.CMAC_INVALID


def test_cmac_from_another_key_is_invalid():
    picc = _picc(2)
    mac = compute_sun_mac(bytes(16), picc)
    verifier = SignatureVerifier(chip_authenticator=LocalCmacAuthenticator(MASTER_KEY))
    assert not verifier.verify_cmac_tap({"picc_data": picc.hex(), "cmac": mac.hex()}).valid


def test_mock_ref_needs_opt_in():
    assert isinstance(SignatureVerifier().verify_cmac_tap({"mockRef": "chip-1"}), CmacInvalid)

    result = SignatureVerifier(allow_mock_refs=True).verify_cmac_tap({"mockRef": "chip-1"})
    assert result.valid and result.chip_id == "chip-1"


class _Response:
    def __init__(self, status, body=None):
        self.status_code = status
        self.ok = status < 400
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class _Session:
    def __init__(self, response):
        self.response = response
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        return self.response


def test_remote_ref_resolves_chip():
    http = _Session(_Response(200, {"uid": "04aabb", "isValidRef": True, "counter": 12}))
    verifier = SignatureVerifier(chip_authenticator=HTTPChipAuthenticator("https://chips.test/", session=http))

    result = verifier.verify_cmac_tap({"iykRef": "REF1"})

    assert result.chip_id == "04aabb" and result.counter == 12
    assert http.urls == ["https://chips.test/refs/REF1"]


def test_remote_ref_rejected_is_invalid():
    http = _Session(_Response(200, {"uid": "04aabb", "isValidRef": False}))
    verifier = SignatureVerifier(chip_authenticator=HTTPChipAuthenticator("https://chips.test", session=http))
    assert isinstance(verifier.verify_cmac_tap({"iykRef": "REF1"}), CmacInvalid)


def test_remote_ref_outage_is_retryable():
    http = _Session(_Response(503))
    verifier = SignatureVerifier(chip_authenticator=HTTPChipAuthenticator("https://chips.test", session=http))
    with pytest.raises(TransportTransientError) as exc:
        verifier.verify_cmac_tap({"iykRef": "REF1"})
    assert exc.value.retryable


@pytest.mark.parametrize("body", [
    {"uid": "04aabb", "isValidRef": True, "counter": "seven"},
    {"uid": "04aabb", "isValidRef": "maybe"},
    {"uid": ["04aabb"], "isValidRef": True},
    ["04aabb", True],
])
def test_remote_ref_bad_body_is_transport_failure(body):
    http = _Session(_Response(200, body))
    verifier = SignatureVerifier(chip_authenticator=HTTPChipAuthenticator("https://chips.test", session=http))
    with pytest.raises(TransportPermanentError) as exc:
        verifier.verify_cmac_tap({"iykRef": "REF1"})
    assert not exc.value.retryable
