"""
HTML status pages shown on port 80 while a domain has no certificate.

Templates use string.Template placeholders:
    $domain      the requested domain (escaped)
    $error       the stored failure reason (failed page only, escaped)
    $started_at  registration time, ISO 8601 (provisioning page only)
    $elapsed     time since registration, e.g. "1m05s" (provisioning page only)
"""
import html
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from string import Template
from typing import Optional

from fastapi import Response
from fastapi.responses import HTMLResponse

from .domains import DomainInfo


RETRY_AFTER_SECONDS = 10

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

_BASE_STYLE = """
        body {
            font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Arial, sans-serif;
            background: #f4f5f7;
            min-height: 100vh;
            display: flex;
            align-items: center;
            justify-content: center;
            margin: 0;
            padding: 20px;
        }
        .card {
            background: #fff;
            border-radius: 10px;
            box-shadow: 0 8px 30px rgba(0, 0, 0, 0.08);
            padding: 36px;
            max-width: 560px;
            width: 100%;
        }
        h1 { margin: 0 0 16px; font-size: 24px; color: #222; }
        p { color: #555; line-height: 1.6; }
        .domain { font-weight: 600; color: #2c5cc5; }
        .muted { font-size: 13px; color: #999; }
"""

DEFAULT_PROVISIONING_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <meta http-equiv="refresh" content="10">
    <title>Setting up secure connection</title>
    <style>""" + _BASE_STYLE + """    </style>
</head>
<body>
    <div class="card">
        <h1>Setting up secure connection</h1>
        <p>A TLS certificate is being issued for <span class="domain">$domain</span>.</p>
        <p>This usually takes under a minute. This page refreshes automatically.</p>
        <p class="muted">Requested at $started_at ($elapsed ago)</p>
    </div>
</body>
</html>
"""

DEFAULT_FAILED_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>Certificate setup failed</title>
    <style>""" + _BASE_STYLE + """        pre { background: #fdf0f0; color: #a61b1b; padding: 12px; white-space: pre-wrap; }
    </style>
</head>
<body>
    <div class="card">
        <h1>Certificate setup failed</h1>
        <p>A TLS certificate could not be issued for <span class="domain">$domain</span>.</p>
        <pre>$error</pre>
        <p>Check that the domain's DNS points at this server and that port 80 is
        reachable from the internet, then retry provisioning.</p>
    </div>
</body>
</html>
"""

DEFAULT_NOT_FOUND_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>Domain not found</title>
    <style>""" + _BASE_STYLE + """    </style>
</head>
<body>
    <div class="card">
        <h1>Domain not found</h1>
        <p>This domain is not configured on this server.</p>
    </div>
</body>
</html>
"""


def format_elapsed(seconds: float) -> str:
    """Render a duration like 1h2m3s, rounded to whole seconds."""
    total = max(0, int(round(seconds)))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


class StatusPageHandler(ABC):
    """Responses for port-80 requests to domains that cannot be redirected yet."""

    @abstractmethod
    def provisioning(self, info: DomainInfo) -> Response:
        """Certificate issuance is in progress."""
        pass

    @abstractmethod
    def failed(self, info: DomainInfo) -> Response:
        """Issuance failed; info.error holds the reason."""
        pass

    @abstractmethod
    def not_found(self) -> Response:
        """The host is not a registered domain."""
        pass


class StatusPages(StatusPageHandler):
    """
    Renders the provisioning, failed and not-found pages.

    Templates are compiled once here and reused for every request. Pass custom
    HTML to override any page; unknown placeholders are left untouched.
    """

    def __init__(
        self,
        provisioning_html: Optional[str] = None,
        failed_html: Optional[str] = None,
        not_found_html: Optional[str] = None,
    ):
        self._provisioning = Template(provisioning_html or DEFAULT_PROVISIONING_HTML)
        self._failed = Template(failed_html or DEFAULT_FAILED_HTML)
        self._not_found = Template(not_found_html or DEFAULT_NOT_FOUND_HTML)

    def provisioning(self, info: DomainInfo, now: Optional[datetime] = None) -> HTMLResponse:
        """202 page polled by the browser until the certificate is ready."""
        now = now or datetime.now(timezone.utc)
        created = info.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        body = self._provisioning.safe_substitute(
            domain=html.escape(info.domain),
            started_at=created.isoformat(timespec="seconds"),
            elapsed=format_elapsed((now - created).total_seconds()),
        )
        headers = dict(NO_CACHE_HEADERS)
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
        return HTMLResponse(body, status_code=202, headers=headers)

    def failed(self, info: DomainInfo) -> HTMLResponse:
        body = self._failed.safe_substitute(
            domain=html.escape(info.domain),
            error=html.escape(info.error),
        )
        return HTMLResponse(body, status_code=503, headers=dict(NO_CACHE_HEADERS))

    def not_found(self) -> HTMLResponse:
        return HTMLResponse(self._not_found.safe_substitute(), status_code=404)
