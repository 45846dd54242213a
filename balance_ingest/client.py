"""
balance_ingest/client.py

A minimal REE (Red Eléctrica de España) REData client used by the ingestion
pipeline to fetch electric balance payloads for a date range.

Responsibilities
---------------
- Define `BalanceSource`, the async contract the orchestrator consumes.
- Implement it with `ReeApiClient`, which calls
  ``GET {base}/{lang}/datos/balance/balance-electrico`` with
  ``start_date``, ``end_date`` and ``time_trunc`` query parameters.
- Translate `requests` failures into `SourceError` with a ``transport`` or
  ``status`` kind. Retrying is the orchestrator's job, not the client's.

Notes
-----
- REE expects dates formatted as ``YYYY-MM-DDTHH:MM``.
- `requests` is blocking, so `fetch` runs the call in a worker thread via
  `asyncio.to_thread` to keep the event loop free.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Literal

import requests
from loguru import logger

from .models import Granularity

DEFAULT_BASE_URL = "https://apidatos.ree.es"
DEFAULT_LANG = "es"
BALANCE_ENDPOINT = "/{lang}/datos/balance/balance-electrico"

# HTTP client settings.
HTTP_TIMEOUT = 10  # seconds
STATUS_TIMEOUT = 5  # seconds, for the availability probe
USER_AGENT = "electric-balance-ingest/0.1"
API_DATE_FORMAT = "%Y-%m-%dT%H:%M"


def format_api_date(dt: datetime) -> str:
    """Format a datetime the way REE expects (``YYYY-MM-DDTHH:MM``)."""
    return dt.strftime(API_DATE_FORMAT)


class SourceError(Exception):
    """Failure reported by a `BalanceSource`.

    Attributes:
        kind: ``"transport"`` for timeouts, connection failures and unreadable
            bodies; ``"status"`` for non-2xx HTTP answers.
        status_code: HTTP status when one was received.
        timed_out: True when the request hit the client timeout.
    """

    def __init__(
        self,
        message: str,
        kind: Literal["transport", "status"],
        status_code: int | None = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.timed_out = timed_out


class BalanceSource(ABC):
    """Anything able to return a raw balance payload for a date range."""

    @abstractmethod
    async def fetch(self, start_iso: str, end_iso: str, granularity: Granularity | str) -> dict:
        """Return the parsed payload for ``[start_iso, end_iso]`` at `granularity`."""


class ReeApiClient(BalanceSource):
    """`BalanceSource` backed by the public REE REData API.

    Args:
        base_url: API root, e.g. ``https://apidatos.ree.es``.
        lang: Endpoint language, ``es`` or ``en``. It changes the labels of
            sections and categories in the payload.
        timeout: Per-request timeout in seconds.
        headers: Extra headers merged over the defaults.
        session: Optional `requests.Session` to reuse connections.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        lang: str = DEFAULT_LANG,
        timeout: float = HTTP_TIMEOUT,
        headers: dict[str, str] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.lang = lang
        self.timeout = timeout
        self.headers = {"Accept": "application/json", "User-Agent": USER_AGENT, **(headers or {})}
        self._session = session or requests.Session()

    @property
    def balance_url(self) -> str:
        return self.base_url + BALANCE_ENDPOINT.format(lang=self.lang)

    @staticmethod
    def build_params(start_iso: str, end_iso: str, granularity: Granularity | str) -> dict[str, str]:
        trunc = granularity.value if isinstance(granularity, Granularity) else str(granularity)
        return {"start_date": start_iso, "end_date": end_iso, "time_trunc": trunc}

    def fetch_sync(self, start_iso: str, end_iso: str, granularity: Granularity | str) -> dict:
        """Blocking fetch of one balance payload.

        Raises:
            SourceError: On timeout, connection failure, non-2xx status, or a
                body that is not a JSON object.
        """
        params = self.build_params(start_iso, end_iso, granularity)
        logger.info("Fetching REE balance {} -> {} ({})", start_iso, end_iso, params["time_trunc"])

        try:
            r = self._session.get(self.balance_url, params=params, headers=self.headers, timeout=self.timeout)
            r.raise_for_status()
        except requests.Timeout as exc:
            raise SourceError(f"Timeout when connecting to REE API: {exc}", "transport", timed_out=True) from exc
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise SourceError(f"REE API answered {status}: {exc}", "status", status_code=status) from exc
        except requests.RequestException as exc:
            raise SourceError(f"Network error when connecting to REE API: {exc}", "transport") from exc

        try:
            body = r.json()
        except ValueError as exc:
            raise SourceError("REE API returned a non-JSON body", "transport", status_code=r.status_code) from exc

        if not isinstance(body, dict) or not body:
            raise SourceError("Empty response from REE API", "status", status_code=r.status_code)

        logger.debug("REE API answered {} for {}", r.status_code, params)
        return body

    async def fetch(self, start_iso: str, end_iso: str, granularity: Granularity | str) -> dict:
        return await asyncio.to_thread(self.fetch_sync, start_iso, end_iso, granularity)

    def check_status(self) -> dict[str, Any]:
        """Probe the API root; never raises."""
        now = datetime.now(timezone.utc).isoformat()
        try:
            r = self._session.get(
                f"{self.base_url}/{self.lang}/datos", headers=self.headers, timeout=STATUS_TIMEOUT
            )
            r.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("REE API status check failed: {}", exc)
            return {"status": "unavailable", "error": str(exc), "timestamp": now}
        return {
            "status": "available",
            "response_time": r.headers.get("x-response-time", "unknown"),
            "timestamp": now,
        }
