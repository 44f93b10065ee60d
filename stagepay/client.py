"""HTTP client for the StagePay API with bounded retries.

Used by admin tooling (``flask verify-payment``) and anything else that
calls the engine over HTTP instead of in-process.

Retry policy:
- 5xx responses, connection errors and timeouts are retried after each
  delay in ``delays`` (default 1s then 2s, so three attempts in total)
- 4xx responses are never retried; they raise EngineRequestError
- once retries are exhausted, TryAgainLater carries a user-facing message

Every request carries a timeout.
"""

import logging
import time

import requests

from stagepay.errors import TRY_AGAIN

logger = logging.getLogger(__name__)


class TryAgainLater(Exception):
    """The engine stayed unavailable through every retry."""

    def __init__(self, message=TRY_AGAIN, last_error=None):
        self.last_error = last_error
        super().__init__(message)


class EngineRequestError(Exception):
    """The engine rejected the request (4xx). Retrying will not help."""

    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self.payload = payload or {}
        message = self.payload.get("message") or f"Request failed with HTTP {status_code}"
        super().__init__(message)

    @property
    def code(self):
        return self.payload.get("error")


def _json(response):
    try:
        return response.json()
    except ValueError:
        return {}


class EngineClient:
    def __init__(self, base_url, session=None, delays=(1.0, 2.0), timeout=10,
                 sleep=time.sleep, csrf_token=None):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.delays = tuple(delays)
        self.timeout = timeout
        self.sleep = sleep
        self.csrf_token = csrf_token

    @classmethod
    def from_config(cls, config, **kwargs):
        return cls(
            config["ENGINE_BASE_URL"],
            delays=config.get("ENGINE_RETRY_DELAYS", (1.0, 2.0)),
            timeout=config.get("ENGINE_TIMEOUT_SECONDS", 10),
            **kwargs,
        )

    def request(self, method, path, json=None, params=None):
        """Send a request, retrying transient failures. Returns the decoded JSON body."""
        method = method.upper()
        headers = {"Accept": "application/json"}
        if method != "GET":
            headers["X-CSRFToken"] = self._ensure_csrf()

        url = f"{self.base_url}{path}"
        attempts = len(self.delays) + 1
        last_error = None

        for attempt in range(attempts):
            try:
                response = self.session.request(
                    method, url, json=json, params=params,
                    headers=headers, timeout=self.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                elif response.status_code >= 400:
                    raise EngineRequestError(response.status_code, _json(response))
                else:
                    return _json(response)

            if attempt < len(self.delays):
                delay = self.delays[attempt]
                logger.warning(
                    f"{method} {path} failed ({last_error}), "
                    f"retry {attempt + 1}/{len(self.delays)} in {delay}s"
                )
                self.sleep(delay)

        logger.error(f"{method} {path} failed after {attempts} attempts: {last_error}")
        raise TryAgainLater(last_error=last_error)

    def _ensure_csrf(self):
        if self.csrf_token is None:
            self.csrf_token = self.request("GET", "/auth/csrf").get("csrf_token", "")
        return self.csrf_token

    # ──────────────────────────────────────────────
    # Endpoints
    # ──────────────────────────────────────────────

    def login(self, email, password):
        return self.request("POST", "/auth/login", json={"email": email, "password": password})

    def verify_payment(self, session_id):
        return self.request("POST", "/billing/verify", json={"session_id": session_id})

    def balance(self):
        return self.request("GET", "/api/credits")

    def redrive(self, external_key):
        return self.request("POST", f"/admin/reconciliation/{external_key}/redrive")
