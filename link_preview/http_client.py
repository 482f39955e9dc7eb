from __future__ import annotations

import re
import ssl
import urllib.parse
from urllib.error import HTTPError, URLError
from urllib.request import HTTPRedirectHandler, HTTPSHandler, Request, build_opener

from .config import CoordinatorConfig

USER_AGENT = "link-preview/0.1"

_HEAD_TAG_RE = re.compile(r"<head(\s[^>]*)?>", re.IGNORECASE)


class HttpClientError(Exception):
    pass


class _SafeRedirectHandler(HTTPRedirectHandler):
    def __init__(self, config: CoordinatorConfig) -> None:
        super().__init__()
        self._config = config

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: ANN001
        # urllib may pass relative URLs here; normalize against the previous URL.
        absolute = urllib.parse.urljoin(req.full_url, str(newurl))
        parsed = urllib.parse.urlparse(absolute)
        if parsed.scheme not in ("http", "https"):
            raise HttpClientError("Only http/https are supported (redirect)")
        if not self._config.is_host_allowed(parsed.hostname or ""):
            raise HttpClientError(f"Host {parsed.hostname} is not in allowlist (redirect)")
        return super().redirect_request(req, fp, code, msg, headers, absolute)


def _check_url(url: str, config: CoordinatorConfig) -> None:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError("Only http/https are supported")
    if not config.is_host_allowed(parsed.hostname or ""):
        raise HttpClientError(f"Host {parsed.hostname} is not in allowlist")


def _opener(config: CoordinatorConfig):  # noqa: ANN202
    ctx = ssl.create_default_context()
    return build_opener(_SafeRedirectHandler(config), HTTPSHandler(context=ctx))


def http_head(url: str, config: CoordinatorConfig) -> int:
    """Issue a HEAD request and return the status code (connection warm-up)."""
    _check_url(url, config)
    req = Request(url, method="HEAD", headers={"User-Agent": USER_AGENT})
    try:
        with _opener(config).open(req, timeout=config.http_timeout) as resp:
            return int(resp.status)
    except HTTPError as exc:
        # The connection is warm even when the server dislikes HEAD.
        return int(exc.code)
    except (TimeoutError, URLError) as exc:
        raise HttpClientError(str(exc)) from exc


def http_get(url: str, config: CoordinatorConfig) -> dict[str, object]:
    _check_url(url, config)
    req = Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with _opener(config).open(req, timeout=config.http_timeout) as resp:
            body = resp.read(config.http_max_bytes + 1)
            truncated = len(body) > config.http_max_bytes
            if truncated:
                body = body[: config.http_max_bytes]
            return {
                "status": resp.status,
                "headers": dict(resp.headers),
                "body": body.decode(errors="replace"),
                "truncated": truncated,
            }
    except HTTPError as exc:
        raise HttpClientError(f"HTTP error! status: {exc.code}") from exc
    except (TimeoutError, URLError) as exc:
        raise HttpClientError(str(exc)) from exc


def inject_base_href(html: str, url: str) -> str:
    """Insert `<base href=url>` right after the opening head tag so relative links resolve."""
    base_tag = f'<base href="{url}">'
    return _HEAD_TAG_RE.sub(lambda m: f"<head{m.group(1) or ''}>{base_tag}", html, count=1)
