"""
tapquest_core.directory
-----------------------
Registered-entity directory consulted by the tap state machine.
lookup(chip_id_or_public_key) -> Person | Location | UnboundChip | None
"""

from __future__ import annotations
from dataclasses import dataclass
import hashlib
from typing import Dict, Optional, Tuple, Union

from .crypto import ed25519_sign
from .utils import b64d


@dataclass(frozen=True)
class Person:
    id: str
    display_name: str
    encryption_public_key: str
    signature_public_key: str


@dataclass(frozen=True)
class Location:
    id: str
    name: str
    signature_public_key: str
    description: str = ""
    sponsor: str = ""


@dataclass(frozen=True)
class UnboundChip:
    """A chip the directory knows about that nobody has claimed yet."""
    chip_id: str
    kind: str  # "person" | "location"


DirectoryEntry = Union[Person, Location, UnboundChip]


class Directory:
    def lookup(self, chip_id_or_public_key: str) -> Optional[DirectoryEntry]:
        raise NotImplementedError

    def sign_location_visit(self, location: Location, nonce: str) -> Optional[Tuple[str, str]]:
        """(message, signature) the location issues for a chip-verified visit, if it signs at all."""
        return None


class InMemoryDirectory(Directory):
    def __init__(self):
        self.entries: Dict[str, DirectoryEntry] = {}
        self.location_keys: Dict[str, bytes] = {}
        self.visit_counts: Dict[str, int] = {}

    def register(self, key: str, entry: DirectoryEntry) -> None:
        self.entries[key] = entry

    def lookup(self, chip_id_or_public_key: str) -> Optional[DirectoryEntry]:
        return self.entries.get(chip_id_or_public_key)

    def register_location_key(self, location_id: str, signature_private_key_b64: str) -> None:
        self.location_keys[location_id] = b64d(signature_private_key_b64)

    def sign_location_visit(self, location: Location, nonce: str) -> Optional[Tuple[str, str]]:
        key = self.location_keys.get(location.id)
        if key is None:
            return None
        # counter message: visitor number (uint32 LE) then 28 bytes bound to the tap nonce
        count = self.visit_counts.get(location.id, 0) + 1
        self.visit_counts[location.id] = count
        message = count.to_bytes(4, "little") + hashlib.sha256(nonce.encode("utf-8")).digest()[:28]
        return message.hex(), ed25519_sign(key, message).hex()
