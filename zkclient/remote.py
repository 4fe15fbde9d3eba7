"""
HTTP transport to the storage service, with the same interface as LogServer.
The bearer capability is sent as-is; it is never inspected here.
"""

import base64
from typing import Any, Dict, List, Optional, Tuple

import httpx

from zkcrypto.errors import InvalidInputError


class RemoteLogServer:
    def __init__(
        self,
        base_url: str = "",
        capability: str = "",
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self._client = client if client is not None else httpx.Client(base_url=base_url, timeout=timeout)
        self._headers = {"Authorization": f"Bearer {capability}"} if capability else {}

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        r = self._client.request(method, path, headers=self._headers, **kwargs)
        if r.status_code == 400 or r.status_code == 422:
            raise InvalidInputError(_detail(r))
        return r

    def put_blob(self, tenant_id: str, user_id: str, version_id: str, blob: bytes) -> None:
        r = self._request(
            "PUT",
            f"/api/tenants/{tenant_id}/users/{user_id}/blobs/{version_id}",
            json={"encryptedBlob": base64.b64encode(blob).decode("ascii")},
        )
        r.raise_for_status()

    def get_blobs(self, tenant_id: str, user_id: str) -> List[Tuple[str, bytes]]:
        r = self._request("GET", f"/api/tenants/{tenant_id}/users/{user_id}/blobs")
        r.raise_for_status()
        return [(item["kekVersionId"], base64.b64decode(item["encryptedBlob"])) for item in r.json()]

    def delete_blob(self, tenant_id: str, user_id: str, version_id: str) -> bool:
        r = self._request("DELETE", f"/api/tenants/{tenant_id}/users/{user_id}/blobs/{version_id}")
        if r.status_code == 404:
            return False
        r.raise_for_status()
        return True

    def upload_entry(self, tenant_id: str, entry: Dict[str, Any]) -> str:
        r = self._request("POST", f"/api/tenants/{tenant_id}/entries", json=entry)
        r.raise_for_status()
        return r.json()["id"]

    def get_entry(self, tenant_id: str, doc_id: str) -> Optional[Dict[str, Any]]:
        r = self._request("GET", f"/api/tenants/{tenant_id}/entries/{doc_id}")
        if r.status_code == 404:
            return None
        r.raise_for_status()
        return r.json()

    def search(self, tenant_id: str, tokens: List[str], kek_versions: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        body: Dict[str, Any] = {"tokens": tokens}
        if kek_versions is not None:
            body["kekVersions"] = kek_versions
        r = self._request("POST", f"/api/tenants/{tenant_id}/search", json=body)
        r.raise_for_status()
        return r.json()["entries"]

    def close(self) -> None:
        self._client.close()


def _detail(r: httpx.Response) -> str:
    try:
        return str(r.json().get("detail", r.text))
    except ValueError:
        return r.text
