"""
tapquest_core.chip
------------------
Chip-verification capability used by the CMAC tap scheme.

A ChipAuthenticator takes the parsed counter-authentication parameters of a
tap and answers with the chip id and counter when the CMAC checks out, or
None when it does not. Two implementations:

- LocalCmacAuthenticator: recomputes an AES-CMAC over the mirrored
  uid||counter bytes with the chip master key (NTAG 424 style truncation)
- HTTPChipAuthenticator: resolves an opaque tap reference against a remote
  chip-verification API
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import hmac
import requests
from cryptography.hazmat.primitives import cmac
from cryptography.hazmat.primitives.ciphers import algorithms

from . import schemas
from .errors import TransportPermanentError, TransportTransientError
from .logger import get_logger

log = get_logger("TapQuest.Chip")

UID_LEN = 7
COUNTER_LEN = 3


@dataclass(frozen=True)
class ChipAuthentication:
    chip_id: str
    counter: Optional[int] = None


class ChipAuthenticator:
    def authenticate_picc(self, picc_data: bytes, mac: bytes) -> Optional[ChipAuthentication]:
        raise NotImplementedError

    def resolve_ref(self, ref: str) -> Optional[ChipAuthentication]:
        raise NotImplementedError


def truncate_mac(full_mac: bytes) -> bytes:
    # NTAG 424 SUN messages carry the odd-indexed bytes of the 16-byte CMAC
    return full_mac[1::2]


def compute_sun_mac(key: bytes, picc_data: bytes) -> bytes:
    c = cmac.CMAC(algorithms.AES(key))
    c.update(picc_data)
    return truncate_mac(c.finalize())


class LocalCmacAuthenticator(ChipAuthenticator):
    """Verifies mirrored SUN data with a shared AES master key."""

    def __init__(self, master_key: bytes):
        if len(master_key) not in (16, 32):
            raise ValueError("AES master key must be 16 or 32 bytes")
        self._key = master_key

    def authenticate_picc(self, picc_data: bytes, mac: bytes) -> Optional[ChipAuthentication]:
        if len(picc_data) != UID_LEN + COUNTER_LEN:
            return None
        expected = compute_sun_mac(self._key, picc_data)
        if not hmac.compare_digest(expected, mac):
            return None
        uid = picc_data[:UID_LEN]
        counter = int.from_bytes(picc_data[UID_LEN:], "little")
        return ChipAuthentication(chip_id=uid.hex(), counter=counter)

    def resolve_ref(self, ref: str) -> Optional[ChipAuthentication]:
        # Opaque references are only resolvable by the remote service
        return None


class HTTPChipAuthenticator(ChipAuthenticator):
    """
    Resolves tap references through a remote chip-verification API.

    GET {base_url}/refs/{ref} -> {"uid": "...", "isValidRef": bool, "counter": int?}
    """

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = session or requests.Session()

    def authenticate_picc(self, picc_data: bytes, mac: bytes) -> Optional[ChipAuthentication]:
        return None

    def resolve_ref(self, ref: str) -> Optional[ChipAuthentication]:
        url = f"{self.base_url}/refs/{ref}"
        log.debug(f"[CHIP REF] → {url}")
        try:
            res = self._http.get(url, timeout=self.timeout)
        except requests.Timeout as e:
            raise TransportTransientError(f"chip verification timed out: {e}")
        except requests.RequestException as e:
            raise TransportTransientError(f"chip verification unreachable: {e}")

        if res.status_code >= 500:
            raise TransportTransientError(f"chip verification error {res.status_code}", res.status_code)
        if not res.ok:
            raise TransportPermanentError(f"chip verification rejected {res.status_code}", res.status_code)

        try:
            data = res.json()
        except ValueError:
            raise TransportPermanentError("chip verification returned non-JSON body")

        body = schemas.parse(schemas.ChipRefResponse, data)
        if not body.isValidRef or not body.uid:
            log.info(f"[CHIP REF] invalid ref {ref}")
            return None
        return ChipAuthentication(chip_id=body.uid, counter=body.counter)
