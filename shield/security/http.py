"""
HTTP Types
==========
Framework-neutral request and response types used by the security gate
and rate limiter, with Starlette/FastAPI conversion helpers.
"""

import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from dataclasses import dataclass, field


CORS_HEADERS: Dict[str, str] = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'Content-Type',
    'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
}


@dataclass
class GatewayRequest:
    """Inbound request as seen by the pipeline."""
    method: str = "GET"
    path: str = "/"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    scheme: str = "https"
    source_ip: Optional[str] = None
    # Raw body length in bytes; derived from body when not given
    body_size: Optional[int] = None
    _lower_headers: Dict[str, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self.method = self.method.upper()
        self._lower_headers = {k.lower(): v for k, v in self.headers.items()}
        if self.body_size is None:
            self.body_size = len(self.body.encode('utf-8')) if self.body else 0

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        return self._lower_headers.get(name.lower(), default)

    @classmethod
    async def from_starlette(cls, request) -> 'GatewayRequest':
        """Build from a Starlette/FastAPI request, reading the body."""
        raw = await request.body()
        return cls(
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers),
            body=raw.decode('utf-8', errors='replace') if raw else None,
            scheme=request.url.scheme,
            source_ip=request.client.host if request.client else None,
            body_size=len(raw),
        )


@dataclass
class GatewayResponse:
    """Outbound response produced or decorated by the pipeline."""
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None

    def with_headers(self, headers: Dict[str, str]) -> 'GatewayResponse':
        """Copy of this response with extra headers merged in."""
        return GatewayResponse(
            status_code=self.status_code,
            headers={**self.headers, **headers},
            body=self.body,
        )

    def to_starlette(self):
        """Convert to a Starlette response."""
        from starlette.responses import Response
        return Response(
            content=self.body,
            status_code=self.status_code,
            headers=self.headers,
        )


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def json_response(
    status_code: int,
    content: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
) -> GatewayResponse:
    """JSON response with CORS headers."""
    return GatewayResponse(
        status_code=status_code,
        headers={'Content-Type': 'application/json', **CORS_HEADERS, **(headers or {})},
        body=json.dumps(content),
    )


def get_client_ip(request: GatewayRequest) -> str:
    """
    Resolve the client address.

    Precedence: X-Forwarded-For (first hop), X-Real-IP, CF-Connecting-IP,
    transport source address, then "unknown".
    """
    forwarded_for = request.header('X-Forwarded-For')
    if forwarded_for:
        first_hop = forwarded_for.split(',')[0].strip()
        if first_hop:
            return first_hop

    return (
        request.header('X-Real-IP')
        or request.header('CF-Connecting-IP')
        or request.source_ip
        or 'unknown'
    )


__all__ = [
    'CORS_HEADERS',
    'GatewayRequest',
    'GatewayResponse',
    'json_response',
    'get_client_ip',
    'utc_timestamp',
]
