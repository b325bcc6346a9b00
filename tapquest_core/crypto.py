from __future__ import annotations
from typing import Tuple, Optional, Dict, Any
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric import ed25519, x25519
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
import os, json
from .constants import MESSAGE_KDF_INFO, GCM_IV_LEN
from .utils import b64e, b64d

"""
tapquest_core.crypto
--------------------
Asymmetric primitives behind the encrypted activity log:

- Ed25519: signatures binding a message to its sender
- X25519 + HKDF + AES-GCM: encryption to a recipient public key (self or peer)
- Helpers: seal_json(), open_json()
"""

# --------- Ed25519 (sign/verify) ----------
def ed25519_generate() -> Tuple[bytes, bytes]:
    sk = ed25519.Ed25519PrivateKey.generate()
    pk = sk.public_key()
    return sk.private_bytes_raw(), pk.public_bytes_raw()

def ed25519_sign(priv_raw: bytes, data: bytes) -> bytes:
    sk = ed25519.Ed25519PrivateKey.from_private_bytes(priv_raw)
    return sk.sign(data)

def ed25519_verify(pub_raw: bytes, sig: bytes, data: bytes) -> bool:
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(pub_raw).verify(sig, data)
        return True
    except (InvalidSignature, ValueError):
        return False

# --------- X25519 + HKDF + AES-GCM (encrypt/decrypt) ----------
def x25519_generate() -> Tuple[bytes, bytes]:
    sk = x25519.X25519PrivateKey.generate()
    pk = sk.public_key()
    return sk.private_bytes_raw(), pk.public_bytes_raw()

def derive_key(own_priv: bytes, peer_pub: bytes, salt: Optional[bytes] = None, info: bytes = MESSAGE_KDF_INFO) -> bytes:
    sk = x25519.X25519PrivateKey.from_private_bytes(own_priv)
    shared = sk.exchange(x25519.X25519PublicKey.from_public_bytes(peer_pub))
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=salt, info=info)
    return hkdf.derive(shared)  # 256-bit AEAD key

def aead_encrypt(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    aes = AESGCM(key)
    nonce = os.urandom(GCM_IV_LEN)
    ct = aes.encrypt(nonce, plaintext, aad)
    return nonce, ct

def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    aes = AESGCM(key)
    return aes.decrypt(nonce, ciphertext, aad)

# --------- Recipient sealing ----------
def _aad_bytes(aad_fields: Optional[Dict[str, Any]]) -> Optional[bytes]:
    if not aad_fields:
        return None
    return json.dumps(aad_fields, separators=(",", ":"), sort_keys=True).encode("utf-8")

def seal_json(payload: dict, sender_priv: bytes, recipient_pub: bytes,
              aad_fields: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """Encrypt a JSON payload so only the holder of recipient_pub's private half (and the sender) can read it."""
    key = derive_key(sender_priv, recipient_pub)
    nonce, ct = aead_encrypt(key, json.dumps(payload, sort_keys=True).encode("utf-8"), aad=_aad_bytes(aad_fields))
    return {"nonce": b64e(nonce), "ciphertext": b64e(ct)}

def open_json(enc: Dict[str, str], recipient_priv: bytes, sender_pub: bytes,
              aad_fields: Optional[Dict[str, Any]] = None) -> dict:
    """Inverse of seal_json. Raises InvalidTag on any tampering or wrong key."""
    key = derive_key(recipient_priv, sender_pub)
    pt = aead_decrypt(key, b64d(enc["nonce"]), b64d(enc["ciphertext"]), aad=_aad_bytes(aad_fields))
    return json.loads(pt.decode("utf-8"))

__all__ = [
    "InvalidTag",
    "ed25519_generate", "ed25519_sign", "ed25519_verify",
    "x25519_generate", "derive_key", "aead_encrypt", "aead_decrypt",
    "seal_json", "open_json",
]
