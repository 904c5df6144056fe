from __future__ import annotations

import json
import ssl
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode, urljoin
from urllib.request import Request, urlopen

API_KEY_HEADER = "X-CapAuth-API-Key"


@dataclass(frozen=True, slots=True)
class HttpResponse:
    """HTTP response wrapper.

    Security notes:
    - Treat `body_bytes` as untrusted.
    """

    status: int
    headers: Mapping[str, str]
    body_bytes: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        if not self.body_bytes:
            return None
        return json.loads(self.body_bytes.decode("utf-8", errors="strict"))

    def text(self) -> str:
        return self.body_bytes.decode("utf-8", errors="replace")


class CapAuthHttpClient:
    """Minimal stdlib-only HTTP client for the capauth API.

    Methods mirror the API routes and return HttpResponse; callers decide how
    to treat non-2xx statuses.

    Security notes:
    - Does NOT disable TLS verification.
    - Capability names are percent-encoded into paths.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/") + "/"
        self.api_key = api_key
        self.timeout = float(timeout)

    def _url(self, path: str, query: Optional[Mapping[str, Any]] = None) -> str:
        url = urljoin(self.base_url, path.lstrip("/"))
        params = {k: v for k, v in (query or {}).items() if v is not None}
        if params:
            url = f"{url}?{urlencode(params)}"
        return url

    def request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        query: Optional[Mapping[str, Any]] = None,
    ) -> HttpResponse:
        data = None if body is None else json.dumps(body).encode("utf-8")
        req = Request(url=self._url(path, query), data=data, method=method)
        req.add_header("Accept", "application/json")
        if data is not None:
            req.add_header("Content-Type", "application/json")
        if self.api_key:
            req.add_header(API_KEY_HEADER, self.api_key)
        return _do_request(req, self.timeout)

    def get(self, path: str, **query: Any) -> HttpResponse:
        return self.request("GET", path, query=query)

    def post(self, path: str, body: Any = None) -> HttpResponse:
        return self.request("POST", path, body=body if body is not None else {})

    # Routes

    def health(self) -> HttpResponse:
        return self.get("/health")

    def list_capabilities(self, prefix: Optional[str] = None, visible: bool = False) -> HttpResponse:
        return self.get("/capabilities", prefix=prefix, visible="true" if visible else None)

    def create_capability(
        self,
        name: str,
        allowed: Iterable[str] = (),
        excluded: Iterable[str] = (),
        priority: int = 0,
    ) -> HttpResponse:
        body = {"name": name, "allowed": list(allowed), "excluded": list(excluded), "priority": priority}
        return self.post("/capabilities", body)

    def get_capability(self, name: str) -> HttpResponse:
        return self.get(f"/capabilities/{_seg(name)}")

    def update_capability(
        self, name: str, allowed: Iterable[str] = (), excluded: Iterable[str] = (), priority: int = 0
    ) -> HttpResponse:
        body = {"allowed": list(allowed), "excluded": list(excluded), "priority": priority}
        return self.request("PUT", f"/capabilities/{_seg(name)}", body=body)

    def delete_capability(self, name: str) -> HttpResponse:
        return self.request("DELETE", f"/capabilities/{_seg(name)}")

    def change_role(self, action: str, name: str, role: str) -> HttpResponse:
        """action is one of grant, revoke, restrict, unrestrict."""
        if action not in {"grant", "revoke", "restrict", "unrestrict"}:
            raise ValueError(f"unknown role action: {action}")
        return self.post(f"/capabilities/{_seg(name)}/{action}", {"role": role})

    def check(
        self,
        capabilities: Union[str, List[str]],
        roles: Optional[List[str]] = None,
        strict: bool = True,
    ) -> HttpResponse:
        body: Dict[str, Any] = {"capabilities": capabilities, "strict": strict}
        if roles is not None:
            body["roles"] = list(roles)
        return self.post("/check", body)

    def bulk_check(self, checks: Mapping[str, Mapping[str, Any]], roles: Optional[List[str]] = None) -> HttpResponse:
        body: Dict[str, Any] = {"checks": dict(checks)}
        if roles is not None:
            body["roles"] = list(roles)
        return self.post("/bulk-check", body)

    def matrix(self, collection: str, actions: Optional[Iterable[str]] = None) -> HttpResponse:
        return self.get(
            f"/collections/{_seg(collection)}/matrix",
            actions=",".join(actions) if actions else None,
        )

    def access_list(
        self,
        rules: Iterable[Mapping[str, Any]] = (),
        read_capability: str = "",
        write_capability: str = "",
    ) -> HttpResponse:
        body = {
            "rules": [dict(r) for r in rules],
            "read_capability": read_capability,
            "write_capability": write_capability,
        }
        return self.post("/access-list", body)

    def load(self, flush: bool = False) -> HttpResponse:
        return self.post("/sync/load", {"flush": flush})

    def propagate(self) -> HttpResponse:
        return self.post("/sync/propagate")


def _seg(value: str) -> str:
    return quote(value, safe="")


def _do_request(req: Request, timeout: float) -> HttpResponse:
    """Execute a request; HTTP error statuses are returned, not raised.

    Security notes:
    - Uses default SSL context (verification ON).
    """

    try:
        ctx = ssl.create_default_context()
        with urlopen(req, context=ctx, timeout=timeout) as resp:
            body = resp.read()
            headers = {k: v for k, v in resp.headers.items()}
            return HttpResponse(status=int(resp.status), headers=headers, body_bytes=body)
    except HTTPError as e:
        body = e.read() if hasattr(e, "read") else b""
        headers = dict(getattr(e, "headers", {}) or {})
        return HttpResponse(status=int(getattr(e, "code", 0) or 0), headers=headers, body_bytes=body)
    except URLError as e:
        raise RuntimeError(f"network error: {e}") from e
