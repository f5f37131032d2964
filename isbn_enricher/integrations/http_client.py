from __future__ import annotations

import json
import logging
import random
import time
from typing import Callable, Dict, Optional

import requests

from isbn_enricher.errors import (
    PermanentProviderError,
    QuotaExhaustedError,
    TransientProviderError,
)

ISBNDB_BASE_URL = "https://api2.isbndb.com"
USER_AGENT = "isbn-enricher/0.1 (python-requests)"
RETRYABLE_STATUSES = (429, 500, 502, 503, 504)
logger = logging.getLogger(__name__)


def _safe_body_preview(resp: requests.Response, limit: int = 800) -> str:
    try:
        if "application/json" in (resp.headers.get("Content-Type") or "").lower():
            try:
                payload = resp.json()
                text = json.dumps(payload, ensure_ascii=False, indent=2)
            except ValueError:
                text = resp.text or ""
        else:
            text = resp.text or ""
    except (requests.RequestException, AttributeError):
        return "<unavailable>"
    text = text.replace("\r", " ").strip()
    if len(text) > limit:
        return text[:limit].rstrip() + "..."
    return text


class ISBNdbQuotaError(QuotaExhaustedError):
    def __init__(self, message: str) -> None:
        super().__init__("isbndb", message)


def make_isbndb_session(api_key: str, auth_header: str = "authorization") -> requests.Session:
    s = requests.Session()
    header_mode = (auth_header or "authorization").strip().lower()
    headers: Dict[str, str] = {}
    if header_mode in ("x-api-key", "x_api_key", "xapikey"):
        headers["X-API-Key"] = api_key
    else:
        headers["Authorization"] = api_key
    s.headers.update({
        **headers,
        "Accept": "application/json",
        "User-Agent": USER_AGENT,
    })
    return s


def make_session(accept: str = "application/json") -> requests.Session:
    s = requests.Session()
    s.headers.update({"Accept": accept, "User-Agent": USER_AGENT})
    return s


def _sleep_jitter(base: float, jitter: float = 0.25) -> None:
    time.sleep(max(0.0, base + random.random() * jitter))


def _error_message(data: Optional[dict]) -> str:
    if not isinstance(data, dict):
        return ""
    msg = data.get("message") or data.get("error") or data.get("errors") or ""
    if isinstance(msg, (list, dict)):
        msg = json.dumps(msg, ensure_ascii=False)
    return str(msg)


def request_json(
    session: requests.Session,
    method: str,
    url: str,
    *,
    provider: str,
    params: Optional[dict] = None,
    data: Optional[dict] = None,
    timeout_s: float = 15,
    retries: int = 2,
    before_request: Optional[Callable[[], None]] = None,
    detect_isbndb_quota: bool = False,
) -> dict:
    """
    JSON request helper shared by every provider:
      - exponential backoff + jitter for 429/5xx/network, honours Retry-After
      - 404 -> PermanentProviderError (callers read it as "no result")
      - other 4xx -> PermanentProviderError, never retried
      - retries exhausted -> TransientProviderError
      - detect_isbndb_quota: "Daily quota ... reached" raises ISBNdbQuotaError immediately
    `before_request` runs ahead of every attempt (rate limiter, quota accounting).
    """
    backoff = 1.0
    last_status = 0
    for attempt in range(1, retries + 2):
        if before_request is not None:
            before_request()
        try:
            logger.debug(
                "request | provider=%s | method=%s | url=%s | params=%s | attempt=%s/%s",
                provider,
                method,
                url,
                params,
                attempt,
                retries + 1,
            )
            r = session.request(method, url, params=params, data=data, timeout=timeout_s)
        except requests.RequestException as e:
            if attempt <= retries:
                logger.warning("request error | provider=%s | url=%s | err=%r (retrying)", provider, url, e)
                _sleep_jitter(backoff, 0.5)
                backoff = min(30.0, backoff * 2)
                continue
            raise TransientProviderError(provider, f"request failed: {url} error={e}") from e

        payload = None
        try:
            if r.content:
                payload = r.json()
        except ValueError:
            payload = None

        if detect_isbndb_quota:
            msg = _error_message(payload)
            if "Daily quota" in msg and "reached" in msg:
                logger.error("quota exhausted | provider=%s | msg=%s", provider, msg)
                raise ISBNdbQuotaError(msg)

        last_status = r.status_code
        if r.status_code in RETRYABLE_STATUSES:
            if attempt <= retries:
                ra = r.headers.get("Retry-After")
                if ra and ra.isdigit():
                    logger.warning("retrying after %ss | provider=%s | status=%s | url=%s", ra, provider, r.status_code, url)
                    _sleep_jitter(min(60.0, float(ra)), 0.5)
                else:
                    logger.warning(
                        "retrying | provider=%s | status=%s | backoff=%s | url=%s",
                        provider,
                        r.status_code,
                        backoff,
                        url,
                    )
                    _sleep_jitter(backoff, 0.5)
                backoff = min(30.0, backoff * 2)
                continue
            raise TransientProviderError(
                provider,
                f"status {r.status_code} after {retries + 1} attempts: {_safe_body_preview(r, 200)}",
                r.status_code,
            )

        if r.status_code == 404:
            raise PermanentProviderError(provider, f"not found: {url}", 404)

        if r.status_code in (401, 403):
            msg = _error_message(payload) or _safe_body_preview(r)
            logger.error("auth error | provider=%s | status=%s | url=%s | msg=%s", provider, r.status_code, url, msg)
            raise PermanentProviderError(provider, f"{r.status_code} auth error: {msg}", r.status_code)

        if r.status_code >= 400:
            logger.error(
                "http error | provider=%s | status=%s | url=%s | params=%s | body=%s",
                provider,
                r.status_code,
                url,
                params,
                _safe_body_preview(r),
            )
            raise PermanentProviderError(provider, f"status {r.status_code}", r.status_code)

        if payload is None and r.content:
            if attempt <= retries:
                logger.warning("invalid json | provider=%s | url=%s (retrying)", provider, url)
                _sleep_jitter(backoff, 0.5)
                backoff = min(30.0, backoff * 2)
                continue
            raise TransientProviderError(provider, f"invalid JSON from {url}", r.status_code)
        if isinstance(payload, dict):
            return payload
        return {"data": payload} if payload is not None else {}

    raise TransientProviderError(provider, f"retries exhausted: {url}", last_status)
