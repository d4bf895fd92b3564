from __future__ import annotations

import logging
import time

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://prices.runescape.wiki/api/v1/osrs"
DEFAULT_USER_AGENT = "flipper-canonical/0.1 (price summary pipeline)"
TIMESERIES_ENDPOINTS = {"5m": "/5m", "1h": "/1h", "6h": "/6h", "24h": "/24h"}


class FeedError(RuntimeError):
    pass


class FeedNotReadyError(FeedError):
    """The upstream has not published the requested window yet."""


class PriceFeedClient:
    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout_seconds = max(float(timeout_seconds), 1.0)
        self.max_retries = max(int(max_retries), 1)
        self.backoff_base_seconds = max(float(backoff_base_seconds), 0.0)
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent or DEFAULT_USER_AGENT})

    def _request_json(self, path: str, params: dict | None = None):
        url = f"{self.base_url}{path}"
        last_err: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.session.get(url, params=params or None, timeout=self.timeout_seconds)
                if response.status_code == 404:
                    raise FeedNotReadyError(f"Feed HTTP 404 for {path} params={params}")
                if response.status_code != 200:
                    message = f"Feed HTTP {response.status_code} for {path}"
                    if response.status_code >= 500 or response.status_code == 429:
                        raise FeedError(message)
                    raise FeedError(f"{message}. Not retrying.")
                return response.json()
            except FeedNotReadyError:
                raise
            except (requests.RequestException, ValueError, FeedError) as exc:
                last_err = exc
                if "Not retrying" in str(exc) or attempt >= self.max_retries:
                    break
                sleep_seconds = self.backoff_base_seconds * (2 ** (attempt - 1))
                logger.debug("Feed request %s failed (attempt %s): %s", path, attempt, exc)
                time.sleep(min(sleep_seconds, 12))

        raise FeedError(str(last_err) if last_err else f"Unknown feed error for {path}")

    def fetch_latest(self) -> dict[int, dict]:
        """Latest instant prices keyed by item id.

        Each value carries high, highTime, low and lowTime; any may be null.
        """
        payload = self._request_json("/latest")
        data = payload.get("data") or {}
        return {int(item_id): dict(row or {}) for item_id, row in data.items()}

    def fetch_timeseries(self, granularity: str, *, timestamp: int | None = None) -> tuple[int | None, dict[int, dict]]:
        path = TIMESERIES_ENDPOINTS.get(granularity)
        if path is None:
            raise ValueError(f"Unknown granularity: {granularity}")
        params = {"timestamp": int(timestamp)} if timestamp is not None else None
        payload = self._request_json(path, params)
        data = payload.get("data") or {}
        api_ts = payload.get("timestamp")
        return (int(api_ts) if api_ts is not None else None), {int(k): dict(v or {}) for k, v in data.items()}

    def fetch_mapping(self) -> list[dict]:
        payload = self._request_json("/mapping")
        if not isinstance(payload, list):
            raise FeedError("Unexpected /mapping payload")
        return payload
