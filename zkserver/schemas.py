"""Wire models for blobs, encrypted log entries and search requests."""
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class EncryptedData(BaseModel):
    ciphertext: str
    iv: str
    tag: str


class EncryptedLogEntry(BaseModel):
    encryptedName: str
    encryptedData: EncryptedData
    kekVersion: str = Field(min_length=1)
    searchTokens: List[str] = []


class StoredEntry(EncryptedLogEntry):
    id: str


class KEKBlobWire(BaseModel):
    kekVersionId: str
    encryptedBlob: str


class ProvisionBlobRequest(BaseModel):
    encryptedBlob: str


class SearchRequest(BaseModel):
    tokens: List[str]
    # Parallel to tokens: the KEK version of each token. Absent means one version.
    kekVersions: Optional[List[str]] = None

    @model_validator(mode="after")
    def _versions_match_tokens(self):
        if self.kekVersions is not None and len(self.kekVersions) != len(self.tokens):
            raise ValueError("kekVersions must have one entry per token")
        return self


class SearchResponse(BaseModel):
    entries: List[StoredEntry]
    total: int


class EntryCreated(BaseModel):
    id: str
