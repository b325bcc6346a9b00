"""
Wire schemas for server responses.

Every JSON body crossing the transport boundary is validated here before it
becomes a domain object; a shape mismatch is a TransportPermanentError.
"""

from datetime import datetime
from typing import List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError

from .errors import TransportPermanentError

M = TypeVar("M", bound=BaseModel)


class AuthTokenModel(BaseModel):
    value: str = Field(min_length=1)
    expiresAt: datetime


class BackupModel(BaseModel):
    encryptedData: str
    authenticationTag: str = ""
    iv: str = ""


class PasswordModel(BaseModel):
    salt: str
    hash: str


class LoginResponse(BaseModel):
    authToken: AuthTokenModel
    backup: Optional[BackupModel] = None
    password: Optional[PasswordModel] = None


class EncryptedMessageModel(BaseModel):
    schema_ver: str = "1.0"
    sender_public_key: str
    sender_signature_public_key: str
    recipient_public_key: str
    nonce: str
    ciphertext: str
    sig: Optional[str] = None
    seq: int


class MessagesResponse(BaseModel):
    messages: List[EncryptedMessageModel] = []


class PostMessagesResponse(BaseModel):
    accepted: int = Field(ge=0)
    seqs: List[int] = []


class RedeemResponse(BaseModel):
    success: bool


class QRCodeResponse(BaseModel):
    id: str
    itemId: str
    itemName: str
    ownerEncryptionPublicKey: str


class DirectoryEntryModel(BaseModel):
    type: Literal["person", "location", "unbound"]
    id: str = ""
    chipId: str = ""
    kind: Literal["person", "location"] = "person"
    displayName: str = ""
    name: str = ""
    description: str = ""
    sponsor: str = ""
    encryptionPublicKey: str = ""
    signaturePublicKey: str = ""


class DirectoryResponse(BaseModel):
    entry: Optional[DirectoryEntryModel] = None


class ChipRefResponse(BaseModel):
    isValidRef: bool
    uid: str = ""
    counter: Optional[int] = None


def parse(model: Type[M], data) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise TransportPermanentError(f"unexpected {model.__name__} shape: {e.error_count()} error(s)")
