"""
tapquest_core.config
--------------------
Runtime settings resolved from the environment.
"""

from __future__ import annotations
from dataclasses import dataclass
import os

from .constants import SCRYPT_N, SCRYPT_R, SCRYPT_P


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    transport: str = "local"          # local | http
    api_url: str = "http://localhost:3000"
    http_timeout: float = 10.0
    storage_provider: str = "memory"  # memory | sqlite
    db_path: str = "db/tapquest_state.db"
    scrypt_n: int = SCRYPT_N
    scrypt_r: int = SCRYPT_R
    scrypt_p: int = SCRYPT_P
    allow_mock_refs: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            transport=os.getenv("TAPQUEST_TRANSPORT", "local").lower(),
            api_url=os.getenv("TAPQUEST_API_URL", "http://localhost:3000"),
            http_timeout=float(os.getenv("TAPQUEST_HTTP_TIMEOUT", "10")),
            storage_provider=os.getenv("TAPQUEST_STORAGE_PROVIDER", "memory").lower(),
            db_path=os.getenv("TAPQUEST_DB_PATH", "db/tapquest_state.db"),
            scrypt_n=int(os.getenv("TAPQUEST_SCRYPT_N", str(SCRYPT_N))),
            scrypt_r=int(os.getenv("TAPQUEST_SCRYPT_R", str(SCRYPT_R))),
            scrypt_p=int(os.getenv("TAPQUEST_SCRYPT_P", str(SCRYPT_P))),
            allow_mock_refs=_env_bool("TAPQUEST_ALLOW_MOCK_REFS"),
        )
