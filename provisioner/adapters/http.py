"""
HTTP kind — verify that an endpoint answers.

A check rather than a change: apply performs the request and fails
unless the status is expected, so a ``retry_then_abort`` policy turns
it into "wait until the service is up".

Params:
    url (str): Target URL.
    method (str): Default GET.
    expect_status (int | list): Default 200.
    insecure (bool): Skip TLS verification (self-signed certificates).
    request_timeout (float): Seconds per request (default 10).
"""

from __future__ import annotations

import logging
import ssl
import time
import urllib.error
import urllib.request
from typing import Any

from provisioner import __version__
from provisioner.adapters.base import StepKind, as_list, require
from provisioner.core.engine.errors import ApplyError, ProbeError
from provisioner.core.models.step import ProbeResult, StepContext

logger = logging.getLogger(__name__)


def fetch_status(
    url: str,
    *,
    method: str = "GET",
    insecure: bool = False,
    timeout: float = 10.0,
) -> int:
    """Return the HTTP status of a request.

    Non-2xx answers are statuses too, not errors.

    Raises:
        OSError: Connection refused, DNS failure, timeout.
    """
    context = None
    if insecure:
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    req = urllib.request.Request(
        url,
        method=method,
        headers={"User-Agent": f"provisioner/{__version__}"},
    )
    start = time.monotonic()
    try:
        with urllib.request.urlopen(req, timeout=timeout, context=context) as resp:
            status = resp.getcode()
    except urllib.error.HTTPError as e:
        status = e.code
    logger.debug("%s %s → %d (%dms)", method, url, status, int((time.monotonic() - start) * 1000))
    return status


def _expected(params: dict[str, Any]) -> list[int]:
    return [int(s) for s in as_list(params.get("expect_status", 200))]


def _request(params: dict[str, Any], timeout: float) -> int:
    return fetch_status(
        params["url"],
        method=params.get("method", "GET"),
        insecure=bool(params.get("insecure")),
        timeout=timeout,
    )


class HttpKind(StepKind):
    """Check an HTTP endpoint's status."""

    @property
    def name(self) -> str:
        return "http"

    def validate(self, params: dict[str, Any]) -> tuple[bool, str]:
        ok, msg = require(params, "url")
        if not ok:
            return ok, msg
        if not str(params["url"]).startswith(("http://", "https://")):
            return False, f"Unsupported URL scheme: {params['url']}"
        try:
            _expected(params)
        except (TypeError, ValueError):
            return False, "'expect_status' must be an int or a list of ints"
        return True, ""

    def probe(self, params: dict[str, Any], ctx: StepContext) -> ProbeResult:
        try:
            status = _request(params, float(params.get("request_timeout", 10)))
        except OSError as e:
            raise ProbeError(f"{params['url']} unreachable: {e}") from e
        return ProbeResult.SATISFIED if status in _expected(params) else ProbeResult.UNSATISFIED

    def apply(self, params: dict[str, Any], ctx: StepContext) -> str:
        timeout = ctx.remaining(float(params.get("request_timeout", 10)))
        try:
            status = _request(params, timeout)
        except OSError as e:
            raise ApplyError(f"{params['url']} unreachable: {e}") from e

        expected = _expected(params)
        if status not in expected:
            raise ApplyError(
                f"{params['url']} answered {status}, expected {', '.join(map(str, expected))}"
            )
        return f"{params['url']} → {status}"
