"""Shared utilities."""

from __future__ import annotations

from typing import Any

import urllib.error
import urllib.parse
import urllib.request


class _SafeRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Redirect handler that only allows http/https schemes."""

    def redirect_request(
        self,
        req: urllib.request.Request,
        fp: Any,
        code: int,
        msg: str,
        headers: Any,
        newurl: str,
    ) -> urllib.request.Request | None:
        parsed = urllib.parse.urlparse(newurl)
        if parsed.scheme not in ("http", "https"):
            raise urllib.error.URLError(f"Unsafe redirect scheme: {parsed.scheme}")
        return super().redirect_request(req, fp, code, msg, headers, newurl)


def is_http_url(value: str) -> bool:
    return urllib.parse.urlparse(value).scheme in ("http", "https")


def safe_urlopen(url: str, timeout: int = 30) -> Any:
    """Open URL with safe redirect handling."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise urllib.error.URLError(f"Unsafe URL scheme: {parsed.scheme}")
    opener = urllib.request.build_opener(_SafeRedirectHandler())
    return opener.open(url, timeout=timeout)


def fetch_bytes(url: str, max_bytes: int, timeout: int = 30) -> bytes:
    """Download a small document, refusing anything larger than max_bytes."""
    with safe_urlopen(url, timeout=timeout) as resp:
        data = resp.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise ValueError(f"{url} is larger than {max_bytes} bytes")
    return data
