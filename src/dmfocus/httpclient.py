"""Summary: Minimal JSON-over-HTTP helpers built on urllib.

Importance: Gives the Instagram, OAuth, and payment clients one place to turn network failures into ProviderError.
Alternatives: Use requests or httpx for outbound calls.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from dmfocus.errors import ProviderError


def get_json(
    url: str,
    params: dict[str, str] | None = None,
    headers: dict[str, str] | None = None,
    timeout: int = 20,
    service: str = "upstream",
) -> dict[str, Any]:
    """Summary: Send a GET request and parse the JSON response."""

    if params:
        url = f"{url}?{urllib.parse.urlencode(params)}"
    request = urllib.request.Request(url, headers=headers or {}, method="GET")
    return _send(request, timeout, service)


def post_json(
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str] | None = None,
    timeout: int = 20,
    service: str = "upstream",
) -> dict[str, Any]:
    """Summary: Send a JSON POST request and parse the JSON response."""

    request = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **(headers or {})},
        method="POST",
    )
    return _send(request, timeout, service)


def post_form(
    url: str,
    payload: dict[str, str],
    timeout: int = 20,
    service: str = "upstream",
) -> dict[str, Any]:
    """Summary: Send a form-encoded POST request and parse JSON.

    Importance: OAuth token endpoints only accept form bodies.
    Alternatives: Use requests or a provider SDK.
    """

    request = urllib.request.Request(
        url,
        data=urllib.parse.urlencode(payload).encode("utf-8"),
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        method="POST",
    )
    return _send(request, timeout, service)


def _send(request: urllib.request.Request, timeout: int, service: str) -> dict[str, Any]:
    """Summary: Execute a request, mapping HTTP and network errors to ProviderError.

    Importance: Non-2xx responses, timeouts, and bad JSON are all transient upstream failures.
    Alternatives: Let urllib exceptions reach the service layer.
    """

    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="replace")
        raise ProviderError(
            f"{service} request failed with HTTP {exc.code}: {error_body or exc.reason}"
        ) from exc
    except (urllib.error.URLError, TimeoutError) as exc:
        raise ProviderError(f"{service} request failed: {exc}") from exc
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"{service} returned invalid JSON") from exc
    if not isinstance(parsed, dict):
        raise ProviderError(f"{service} returned an unexpected payload")
    return parsed
