from __future__ import annotations

from typing import Any, Final

import httpx

from .range_errors import UpstreamRejected, UpstreamUnavailable

# Client errors that are really "try again later" rather than "never".
TRANSIENT_CLIENT_STATUS: Final[set[int]] = {408, 425, 429}


def format_upstream_error(resp: httpx.Response, *, service: str) -> str:
    """Best-effort decode of JSON error payloads."""
    try:
        data = resp.json()
        if isinstance(data, dict):
            detail = data.get("detailedError") or data.get("error") or data
            if isinstance(detail, dict):
                code = detail.get("code")
                message = detail.get("message")
            else:
                code, message = None, detail
            if code and message:
                return f"{service} {resp.status_code} {code}: {message}"
            if message:
                return f"{service} {resp.status_code}: {message}"
    except ValueError:
        # fall through to text
        pass

    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > 240:
        body = body[:240] + "..."
    if body:
        return f"{service} {resp.status_code}: {body}"
    return f"{service} HTTP {resp.status_code}"


def raise_for_upstream(resp: httpx.Response, *, service: str) -> None:
    status = int(resp.status_code)
    if status < 400:
        return
    message = format_upstream_error(resp, service=service)
    if 400 <= status < 500 and status not in TRANSIENT_CLIENT_STATUS:
        raise UpstreamRejected(message, status_code=status)
    raise UpstreamUnavailable(message, status_code=status)


def describe_transport_error(exc: Exception) -> str:
    # httpx exceptions can stringify to "" (e.g. some timeouts), so include the type.
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else f"{type(exc).__name__}: {exc!r}"


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    service: str,
    params: dict[str, str] | None = None,
    timeout_s: float | None = None,
) -> Any:
    """GET and decode JSON, mapping every failure onto the upstream error taxonomy."""
    try:
        if timeout_s is None:
            resp = await client.get(url, params=params)
        else:
            resp = await client.get(url, params=params, timeout=timeout_s)
    except (httpx.TimeoutException, httpx.TransportError) as exc:
        raise UpstreamUnavailable(f"{service} request failed: {describe_transport_error(exc)}") from exc

    raise_for_upstream(resp, service=service)
    if resp.status_code == 204 or not bytes(resp.content or b""):
        return None
    try:
        return resp.json()
    except ValueError as exc:
        raise UpstreamUnavailable(f"{service} returned invalid JSON") from exc
