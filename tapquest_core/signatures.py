"""
tapquest_core.signatures
------------------------
Verification of the three tap payload shapes:

- CMAC taps: chip counter authentication, delegated to a ChipAuthenticator
- Person / location taps: Ed25519 signature over a chip counter message
- Sig-card taps: ECDSA signatures straight from card firmware, normalized to
  low-s before point verification

Verification is pure and reports typed outcomes. Malformed input is an
invalid result, never an exception. Only a failing remote chip service
surfaces as TransportFailure, since that is retryable rather than invalid.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
    encode_dss_signature,
)

from .chip import ChipAuthenticator
from .crypto import ed25519_verify
from .logger import get_logger
from .utils import hex_or_b64d, maybe_hex

log = get_logger("TapQuest.Signatures")

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
P256_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
class TapResponseCode(str, Enum):
    CMAC_INVALID = "CMAC_INVALID"
    PERSON_NOT_REGISTERED = "PERSON_NOT_REGISTERED"
    LOCATION_NOT_REGISTERED = "LOCATION_NOT_REGISTERED"
    VALID_PERSON = "VALID_PERSON"
    VALID_LOCATION = "VALID_LOCATION"


@dataclass(frozen=True)
class CmacTapResult:
    chip_id: str
    nonce: str
    counter: Optional[int] = None
    valid: bool = True


@dataclass(frozen=True)
class CmacInvalid:
    reason: str = ""
    valid: bool = False
    code = TapResponseCode.CMAC_INVALID


@dataclass(frozen=True)
class SigCardResult:
    valid: bool
    signature: Optional[str] = None  # normalized r||s hex when valid
    reason: str = ""


CmacOutcome = Union[CmacTapResult, CmacInvalid]


# ---------------------------------------------------------------------------
# Signature normalization strategies
# ---------------------------------------------------------------------------
class SignatureNormalizer:
    def normalize(self, r: int, s: int) -> Tuple[int, int]:
        raise NotImplementedError


class IdentityNormalizer(SignatureNormalizer):
    """For curves with no malleability convention."""

    def normalize(self, r: int, s: int) -> Tuple[int, int]:
        return r, s


class LowSNormalizer(SignatureNormalizer):
    """Maps s to min(s, n - s) for a curve of order n."""

    def __init__(self, order: int):
        self.order = order

    def normalize(self, r: int, s: int) -> Tuple[int, int]:
        if not (0 < r < self.order and 0 < s < self.order):
            raise ValueError("signature scalar out of range")
        if s > self.order // 2:
            s = self.order - s
        return r, s


@dataclass(frozen=True)
class SigCardScheme:
    curve: ec.EllipticCurve
    normalizer: SignatureNormalizer
    prehashed: bool = False  # message is already a SHA-256 digest

    @property
    def scalar_len(self) -> int:
        return (self.curve.key_size + 7) // 8


SECP256K1_SCHEME = SigCardScheme(curve=ec.SECP256K1(), normalizer=LowSNormalizer(SECP256K1_ORDER))
P256_SCHEME = SigCardScheme(curve=ec.SECP256R1(), normalizer=LowSNormalizer(P256_ORDER))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def extract_counter_from_message(message: Optional[str]) -> Optional[int]:
    """
    Visit counter embedded in a chip counter message.

    The first four bytes of the hex message are a little-endian uint32.
    Returns None when the message carries no counter.
    """
    if not message or len(message) < 8:
        return None
    raw = maybe_hex(message[:8])
    if raw is None:
        return None
    return int.from_bytes(raw, "little")


def _message_bytes(message: str) -> bytes:
    raw = maybe_hex(message[2:] if message.startswith("0x") else message)
    return raw if raw is not None else message.encode("utf-8")


def _split_signature(raw: bytes, scalar_len: int) -> Tuple[int, int]:
    if len(raw) == 2 * scalar_len:
        return int.from_bytes(raw[:scalar_len], "big"), int.from_bytes(raw[scalar_len:], "big")
    # Anything else must be DER
    return decode_dss_signature(raw)


def verify_signature(public_key: str, message: str, signature: str) -> bool:
    """Ed25519 check used for person and location taps."""
    try:
        pub = hex_or_b64d(public_key)
        sig = hex_or_b64d(signature)
    except ValueError:
        return False
    return ed25519_verify(pub, sig, _message_bytes(message))


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------
class SignatureVerifier:
    def __init__(self, chip_authenticator: Optional[ChipAuthenticator] = None,
                 sig_card_scheme: SigCardScheme = SECP256K1_SCHEME,
                 allow_mock_refs: bool = False):
        self.chip_authenticator = chip_authenticator
        self.sig_card_scheme = sig_card_scheme
        self.allow_mock_refs = allow_mock_refs

    def verify_cmac_tap(self, raw_params: Mapping[str, str]) -> CmacOutcome:
        mock_ref = raw_params.get("mockRef")
        if mock_ref:
            if not self.allow_mock_refs:
                return CmacInvalid("mock refs disabled")
            return CmacTapResult(chip_id=mock_ref, nonce=f"mock:{mock_ref}")

        if self.chip_authenticator is None:
            return CmacInvalid("no chip authenticator configured")

        ref = raw_params.get("iykRef")
        if ref:
            auth = self.chip_authenticator.resolve_ref(ref)
            if auth is None:
                return CmacInvalid("reference rejected")
            return CmacTapResult(chip_id=auth.chip_id, nonce=ref, counter=auth.counter)

        picc_hex = raw_params.get("picc_data")
        mac_hex = raw_params.get("cmac")
        if not picc_hex or not mac_hex:
            return CmacInvalid("missing counter authentication parameters")
        picc = maybe_hex(picc_hex)
        mac = maybe_hex(mac_hex)
        if picc is None or mac is None:
            return CmacInvalid("malformed hex")
        auth = self.chip_authenticator.authenticate_picc(picc, mac)
        if auth is None:
            log.info(f"[TAP] CMAC mismatch picc={picc_hex}")
            return CmacInvalid("cmac mismatch")
        return CmacTapResult(chip_id=auth.chip_id, nonce=picc_hex.lower(), counter=auth.counter)

    def verify_sig_card_tap(self, signature_public_key: str, signature_message: str,
                            raw_signature: str) -> SigCardResult:
        scheme = self.sig_card_scheme
        try:
            pub = ec.EllipticCurvePublicKey.from_encoded_point(scheme.curve, hex_or_b64d(signature_public_key))
            r, s = _split_signature(hex_or_b64d(raw_signature), scheme.scalar_len)
            r, s = scheme.normalizer.normalize(r, s)
        except ValueError as e:
            return SigCardResult(valid=False, reason=f"malformed: {e}")

        message = _message_bytes(signature_message)
        algorithm = ec.ECDSA(Prehashed(hashes.SHA256())) if scheme.prehashed else ec.ECDSA(hashes.SHA256())
        try:
            pub.verify(encode_dss_signature(r, s), message, algorithm)
        except (InvalidSignature, ValueError):
            return SigCardResult(valid=False, reason="signature does not verify")

        normalized = r.to_bytes(scheme.scalar_len, "big") + s.to_bytes(scheme.scalar_len, "big")
        return SigCardResult(valid=True, signature=normalized.hex())

    def verify_tap_signature(self, public_key: str, message: str, signature: str) -> bool:
        return verify_signature(public_key, message, signature)
