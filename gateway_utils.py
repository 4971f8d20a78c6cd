import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
REJECTED = "rejected"
TRANSPORT_TIMEOUT = "transport_timeout"
TRANSPORT_ERROR = "transport_error"


@dataclass
class GatewayResult:
    """Processor response, normalized across both processors."""

    accepted: bool
    external_id: Optional[str] = None
    http_status: Optional[int] = None
    raw_body: Any = field(default_factory=dict)
    reason: str = ACCEPTED
    checkout_url: Optional[str] = None
    request: dict = field(default_factory=dict)

    @property
    def is_transport_failure(self) -> bool:
        return self.reason in (TRANSPORT_TIMEOUT, TRANSPORT_ERROR)

    def audit(self) -> dict:
        return {
            "lastHttpStatus": self.http_status,
            "lastResponse": self.raw_body,
            "lastReason": self.reason,
            **({"request": self.request} if self.request else {}),
        }


def lookup_first(data: Any, paths) -> Optional[str]:
    """First non-empty value found along the given key paths."""
    for path in paths:
        value = data
        for key in path:
            value = value.get(key) if isinstance(value, dict) else None
        if value:
            return str(value)
    return None


@dataclass
class ProcessorResponse:
    ok: bool
    status: Optional[int]
    data: Any
    reason: str = ACCEPTED


class ProcessorClient:
    """
    Bearer-token JSON client shared by the processor gateways. Transport
    problems come back as a ProcessorResponse, never as an exception.
    """

    name = "processor"

    def __init__(self, base_url: str, token: str, timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.token = (token or "").strip()
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def headers(self, with_body: bool = False) -> dict:
        headers = {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}
        if with_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def fetch(self, path: str, method: str = "GET", body: Optional[dict] = None,
                    params: Optional[dict] = None) -> ProcessorResponse:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                resp = await client.request(
                    method, url, json=body, params=params, headers=self.headers(body is not None)
                )
        except httpx.TimeoutException as e:
            logger.warning("%s %s %s timed out: %s", self.name, method, path, e)
            return ProcessorResponse(False, None, {"error": str(e) or "timeout"}, TRANSPORT_TIMEOUT)
        except httpx.HTTPError as e:
            logger.warning("%s %s %s failed: %s", self.name, method, path, e)
            return ProcessorResponse(False, None, {"error": str(e)}, TRANSPORT_ERROR)

        text = resp.text
        try:
            data = resp.json() if text else {}
        except ValueError:
            data = {"raw": text}

        if not resp.is_success:
            logger.warning("%s %s %s answered %s", self.name, method, path, resp.status_code)
        return ProcessorResponse(resp.is_success, resp.status_code, data,
                                 ACCEPTED if resp.is_success else REJECTED)
