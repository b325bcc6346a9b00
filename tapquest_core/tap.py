"""
tapquest_core.tap
-----------------
Tap payloads and the state machine that classifies a tap into one of five
terminal outcomes:

    CMAC_INVALID | PERSON_NOT_REGISTERED | LOCATION_NOT_REGISTERED
    | VALID_PERSON | VALID_LOCATION

The classification is deterministic given the directory and the cached
location signatures. Navigation and other side effects belong to the caller.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, TypeVar, Union

from .directory import Directory, Location, Person, UnboundChip
from .logger import get_logger
from .signatures import CmacInvalid, SignatureVerifier, TapResponseCode
from .state import LocationSignature

log = get_logger("TapQuest.Tap")

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class PersonTap:
    counter_message: str
    signature: str
    signer_public_key: str


@dataclass(frozen=True)
class LocationTap:
    location_id: str
    name: str
    signature_public_key: str
    signature_message: str
    signature: str


@dataclass(frozen=True)
class SigCardTap:
    signature_public_key: str
    signature_message: str
    raw_signature: str


TapPayload = Union[PersonTap, LocationTap, SigCardTap]


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class PersonNotRegistered:
    chip_id: str
    code = TapResponseCode.PERSON_NOT_REGISTERED


@dataclass(frozen=True)
class LocationNotRegistered:
    chip_id: str
    code = TapResponseCode.LOCATION_NOT_REGISTERED


@dataclass(frozen=True)
class ValidPerson:
    person: Person
    code = TapResponseCode.VALID_PERSON


@dataclass(frozen=True)
class ValidLocation:
    location: Location
    existing_signature: Optional[LocationSignature] = None
    fresh_tap: Optional[LocationTap] = None  # only set when no signature exists yet
    code = TapResponseCode.VALID_LOCATION

    @property
    def already_visited(self) -> bool:
        return self.existing_signature is not None


TapOutcome = Union[CmacInvalid, PersonNotRegistered, LocationNotRegistered, ValidPerson, ValidLocation]


def match_outcome(outcome: TapOutcome, *,
                  cmac_invalid: Callable[[CmacInvalid], T],
                  person_not_registered: Callable[[PersonNotRegistered], T],
                  location_not_registered: Callable[[LocationNotRegistered], T],
                  valid_person: Callable[[ValidPerson], T],
                  valid_location: Callable[[ValidLocation], T]) -> T:
    """Dispatch on every outcome; all five handlers are required."""
    if isinstance(outcome, CmacInvalid):
        return cmac_invalid(outcome)
    if isinstance(outcome, PersonNotRegistered):
        return person_not_registered(outcome)
    if isinstance(outcome, LocationNotRegistered):
        return location_not_registered(outcome)
    if isinstance(outcome, ValidPerson):
        return valid_person(outcome)
    if isinstance(outcome, ValidLocation):
        return valid_location(outcome)
    raise TypeError(f"unknown tap outcome: {outcome!r}")


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------
class TapStateMachine:
    def __init__(self, verifier: SignatureVerifier, directory: Directory):
        self.verifier = verifier
        self.directory = directory

    def classify_cmac(self, raw_params: Mapping[str, str],
                      location_signatures: Mapping[str, LocationSignature]) -> TapOutcome:
        result = self.verifier.verify_cmac_tap(raw_params)
        if isinstance(result, CmacInvalid):
            return result
        return self._classify_identity(result.chip_id, location_signatures, nonce=result.nonce)

    def classify(self, payload: TapPayload,
                 location_signatures: Mapping[str, LocationSignature]) -> TapOutcome:
        if isinstance(payload, SigCardTap):
            checked = self.verifier.verify_sig_card_tap(
                payload.signature_public_key, payload.signature_message, payload.raw_signature)
            if not checked.valid:
                return CmacInvalid(checked.reason)
            return self._classify_identity(
                payload.signature_public_key, location_signatures,
                card_signature=(payload.signature_message, checked.signature),
                unknown_kind="location",
            )

        if isinstance(payload, PersonTap):
            if not self.verifier.verify_tap_signature(
                    payload.signer_public_key, payload.counter_message, payload.signature):
                return CmacInvalid("person signature does not verify")
            return self._classify_identity(payload.signer_public_key, location_signatures)

        if isinstance(payload, LocationTap):
            if not self.verifier.verify_tap_signature(
                    payload.signature_public_key, payload.signature_message, payload.signature):
                return CmacInvalid("location signature does not verify")
            return self._classify_identity(
                payload.signature_public_key, location_signatures,
                card_signature=(payload.signature_message, payload.signature),
                unknown_kind="location",
            )

        raise TypeError(f"unknown tap payload: {payload!r}")

    def _classify_identity(self, identity: str,
                           location_signatures: Mapping[str, LocationSignature],
                           nonce: Optional[str] = None,
                           card_signature: Optional[tuple] = None,
                           unknown_kind: Optional[str] = None) -> TapOutcome:
        entry = self.directory.lookup(identity)

        if entry is None:
            # A verified signature from an unknown card is an unclaimed location card
            if unknown_kind == "location":
                return LocationNotRegistered(chip_id=identity)
            return CmacInvalid("unknown chip")

        if isinstance(entry, UnboundChip):
            if entry.kind == "person":
                return PersonNotRegistered(chip_id=entry.chip_id)
            return LocationNotRegistered(chip_id=entry.chip_id)

        if isinstance(entry, Person):
            return ValidPerson(person=entry)

        if isinstance(entry, Location):
            existing = location_signatures.get(entry.id)
            if existing is not None:
                log.info(f"[TAP] location {entry.id} already visited")
                return ValidLocation(location=entry, existing_signature=existing)
            return ValidLocation(location=entry, fresh_tap=self._fresh_location_tap(entry, nonce, card_signature))

        raise TypeError(f"unknown directory entry: {entry!r}")

    def _fresh_location_tap(self, location: Location, nonce: Optional[str],
                            card_signature: Optional[tuple]) -> Optional[LocationTap]:
        if card_signature is not None:
            message, signature = card_signature
            return LocationTap(
                location_id=location.id,
                name=location.name,
                signature_public_key=location.signature_public_key,
                signature_message=message,
                signature=signature,
            )
        signed = self.directory.sign_location_visit(location, nonce or "")
        if signed is None:
            return None
        message, signature = signed
        return LocationTap(
            location_id=location.id,
            name=location.name,
            signature_public_key=location.signature_public_key,
            signature_message=message,
            signature=signature,
        )
