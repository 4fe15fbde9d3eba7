"""
FastAPI storage service: KEK blobs, encrypted log entries, token search.

The bearer capability is handed to an injected authorizer as an opaque string;
this service never parses claims from it. Bodies carry only ciphertext, sealed
blobs and base64 tokens.
"""

import base64
import binascii
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response

from zkcrypto.errors import InvalidInputError

from .schemas import (
    EncryptedLogEntry,
    EntryCreated,
    KEKBlobWire,
    ProvisionBlobRequest,
    SearchRequest,
    SearchResponse,
    StoredEntry,
)
from .server import LogServer

# (capability, tenant_id, user_id or None) -> allowed
Authorizer = Callable[[str, str, Optional[str]], bool]


def allow_any_capability(capability: str, tenant_id: str, user_id: Optional[str]) -> bool:
    """Default authorizer for local use: any presented capability is accepted."""
    return True


def require_capability(authorization: Optional[str] = Header(None, alias="Authorization")) -> str:
    """Extract the bearer capability; 401 if missing."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Bearer capability required")
    capability = authorization[7:].strip()
    if not capability:
        raise HTTPException(status_code=401, detail="Bearer capability required")
    return capability


def _server(request: Request) -> LogServer:
    return request.app.state.log_server


def _authorize(request: Request, capability: str, tenant_id: str, user_id: Optional[str] = None) -> None:
    if not request.app.state.authorize(capability, tenant_id, user_id):
        raise HTTPException(status_code=403, detail="Not authorized for this tenant")


router = APIRouter(prefix="/api/tenants/{tenant_id}")


@router.put("/users/{user_id}/blobs/{version_id}", response_model=KEKBlobWire)
def provision_blob(
    tenant_id: str,
    user_id: str,
    version_id: str,
    body: ProvisionBlobRequest,
    request: Request,
    capability: str = Depends(require_capability),
):
    _authorize(request, capability, tenant_id, user_id)
    try:
        raw = base64.b64decode(body.encryptedBlob, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="encryptedBlob is not valid base64")
    if not raw:
        raise HTTPException(status_code=400, detail="encryptedBlob must not be empty")
    _server(request).put_blob(tenant_id, user_id, version_id, raw)
    return KEKBlobWire(kekVersionId=version_id, encryptedBlob=body.encryptedBlob)


@router.get("/users/{user_id}/blobs", response_model=List[KEKBlobWire])
def get_user_blobs(
    tenant_id: str,
    user_id: str,
    request: Request,
    capability: str = Depends(require_capability),
):
    _authorize(request, capability, tenant_id, user_id)
    return [
        KEKBlobWire(kekVersionId=version_id, encryptedBlob=base64.b64encode(blob).decode("ascii"))
        for version_id, blob in _server(request).get_blobs(tenant_id, user_id)
    ]


@router.delete("/users/{user_id}/blobs/{version_id}", status_code=204)
def revoke_blob(
    tenant_id: str,
    user_id: str,
    version_id: str,
    request: Request,
    capability: str = Depends(require_capability),
):
    _authorize(request, capability, tenant_id, user_id)
    if not _server(request).delete_blob(tenant_id, user_id, version_id):
        raise HTTPException(status_code=404, detail="Not found")
    return Response(status_code=204)


@router.post("/entries", response_model=EntryCreated, status_code=201)
def upload_entry(
    tenant_id: str,
    body: EncryptedLogEntry,
    request: Request,
    capability: str = Depends(require_capability),
):
    _authorize(request, capability, tenant_id)
    try:
        doc_id = _server(request).upload_entry(tenant_id, body.model_dump())
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return EntryCreated(id=doc_id)


@router.get("/entries/{doc_id}", response_model=StoredEntry)
def get_entry(
    tenant_id: str,
    doc_id: str,
    request: Request,
    capability: str = Depends(require_capability),
):
    _authorize(request, capability, tenant_id)
    entry = _server(request).get_entry(tenant_id, doc_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Not found")
    return entry


@router.post("/search", response_model=SearchResponse)
def search(
    tenant_id: str,
    body: SearchRequest,
    request: Request,
    capability: str = Depends(require_capability),
):
    _authorize(request, capability, tenant_id)
    try:
        entries = _server(request).search(tenant_id, body.tokens, body.kekVersions)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return SearchResponse(entries=entries, total=len(entries))


def create_app(log_server: Optional[LogServer] = None, authorize: Optional[Authorizer] = None) -> FastAPI:
    app = FastAPI(
        title="NeuralLog Encrypted Log Store",
        description="Stores ciphertext, sealed KEK blobs and opaque search tokens",
        version="1.0.0",
    )
    app.state.log_server = log_server if log_server is not None else LogServer()
    app.state.authorize = authorize or allow_any_capability
    app.include_router(router)

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    @app.get("/api/security-info")
    def security_info():
        """Algorithm names and leakage profile only; no key material."""
        return {
            "encryption": "AES-256-GCM",
            "token_generation": "HMAC-SHA256",
            "key_derivation": "PBKDF2-HMAC-SHA256 + HKDF-SHA256",
            "key_size_bits": 256,
            "leakage_profile": {
                "search_pattern": True,
                "access_pattern": True,
                "content_leakage": False,
            },
        }

    return app
