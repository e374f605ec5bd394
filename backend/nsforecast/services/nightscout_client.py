import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from nsforecast.models.domain import Observation
from nsforecast.models.schemas import NightscoutSGV, NightscoutStatus, Treatment
from nsforecast.services.reading_store import dedupe_observations
from nsforecast.services.units import to_primary_unit
from nsforecast.utils.timezone import ensure_utc

logger = logging.getLogger(__name__)


class NightscoutError(Exception):
    """Raised when Nightscout interaction fails."""


def _is_jwt(token: Optional[str]) -> bool:
    return bool(token) and len(token) > 20 and token.count(".") >= 2


def _epoch_ms(dt: datetime) -> int:
    return round(ensure_utc(dt).timestamp() * 1000)


class NightscoutClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout_seconds: int = 10,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.api_secret = api_secret
        self.timeout_seconds = timeout_seconds

        headers = self._auth_headers()
        headers["Accept"] = "application/json"

        # Access tokens (subject-hash, e.g. "app-1a2b...") are only accepted as a query param.
        params = {}
        if self.token and not _is_jwt(self.token) and "-" in self.token:
            params["token"] = self.token

        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            headers=headers,
            params=params,
        )

    def _auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.token:
            if _is_jwt(self.token):
                headers["Authorization"] = f"Bearer {self.token}"
            else:
                headers["API-SECRET"] = hashlib.sha1(self.token.encode("utf-8")).hexdigest()

        # An explicit api_secret wins over a token-derived one.
        if self.api_secret:
            headers["API-SECRET"] = hashlib.sha1(self.api_secret.encode("utf-8")).hexdigest()
        return headers

    async def _handle_response(self, response: httpx.Response) -> Any:
        try:
            response.raise_for_status()
            if not response.content.strip():
                # Empty body is sometimes returned by Nightscout instead of []
                return []
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error("Nightscout API error", extra={"status_code": exc.response.status_code, "body": exc.response.text})
            raise NightscoutError(f"Nightscout returned status {exc.response.status_code}") from exc
        except ValueError as exc:
            preview = response.text[:200]
            logger.error(f"Invalid JSON from Nightscout. Body: {preview!r}")
            raise NightscoutError(f"Nightscout returned invalid JSON (Body: {preview!r})") from exc

    async def _get(self, endpoint: str, params: Optional[dict[str, Any]] = None) -> Any:
        try:
            response = await self.client.get(endpoint, params=params)
        except httpx.TimeoutException as exc:
            raise NightscoutError("Timeout connecting to Nightscout") from exc
        except httpx.HTTPError as exc:
            raise NightscoutError(f"Request to {endpoint} failed: {exc}") from exc
        return await self._handle_response(response)

    async def get_status(self) -> NightscoutStatus:
        endpoint_candidates = ["/api/v1/status", "/api/v1/status.json", "/status.json"]
        last_error: Optional[Exception] = None
        for endpoint in endpoint_candidates:
            try:
                data = await self._get(endpoint)
                if isinstance(data, list):
                    raise NightscoutError("Expected dict for status, got list")
                return NightscoutStatus.model_validate(data)
            except NightscoutError as exc:
                last_error = exc
                logger.warning("Nightscout status endpoint failed", extra={"endpoint": endpoint, "error": str(exc)})
        raise NightscoutError(f"Unable to fetch Nightscout status: {last_error}")

    async def get_sgv_range(self, start_dt: datetime, end_dt: datetime, count: int = 288) -> list[NightscoutSGV]:
        """
        Fetches SGV entries within a date range.
        Filters on epoch milliseconds (find[date]) since dateString formats vary between uploaders.
        """
        params = {
            "find[date][$gte]": _epoch_ms(start_dt),
            "find[date][$lte]": _epoch_ms(end_dt),
            "count": count,
        }
        data = await self._get("/api/v1/entries/sgv", params=params)
        if not isinstance(data, list):
            logger.warning(f"Expected list for SGV entries, got {type(data).__name__}")
            return []

        results = []
        for item in data:
            try:
                results.append(NightscoutSGV.model_validate(item))
            except ValueError as exc:
                logger.warning(f"Skipping malformed SGV entry: {exc}")
        logger.info(f"Fetched {len(results)} SGV entries between {start_dt.isoformat()} and {end_dt.isoformat()}")
        return results

    async def get_treatments_range(self, start_dt: datetime, end_dt: datetime, count: int = 500) -> list[Treatment]:
        params = {
            "find[created_at][$gte]": ensure_utc(start_dt).isoformat(),
            "find[created_at][$lte]": ensure_utc(end_dt).isoformat(),
            "count": count,
        }
        data = await self._get("/api/v1/treatments", params=params)
        if not isinstance(data, list):
            logger.warning(f"Expected list for treatments, got {type(data).__name__}")
            return []

        start, end = ensure_utc(start_dt), ensure_utc(end_dt)
        treatments = []
        for item in data:
            try:
                treatment = Treatment.model_validate(item)
            except ValueError as exc:
                logger.error(f"Skipping treatment due to error: {exc}. Item: {item}")
                continue
            if treatment.created_at is None:
                continue
            # Some servers ignore the find[] filter; enforce the window client side.
            if start <= ensure_utc(treatment.created_at) <= end:
                treatments.append(treatment)
        logger.info(f"Fetched {len(data)} treatments, {len(treatments)} inside the requested window")
        return treatments

    async def aclose(self) -> None:
        await self.client.aclose()


class NightscoutObservationSource:
    """
    Reads SGV entries as mmol/L observations.

    Nightscout returns the newest `count` entries of a range, so longer ranges
    are read in pages, moving the upper bound down to the oldest entry seen.
    """

    def __init__(
        self,
        client: NightscoutClient,
        max_entries: int = 2016,
        source_label: str = "nightscout",
        max_pages: int = 20,
    ):
        self.client = client
        self.max_entries = max_entries
        self.source_label = source_label
        self.max_pages = max_pages

    async def _fetch_entries(self, start: datetime, end: datetime) -> list[NightscoutSGV]:
        entries: list[NightscoutSGV] = []
        upper = ensure_utc(end)
        for _ in range(self.max_pages):
            page = await self.client.get_sgv_range(start, upper, count=self.max_entries)
            entries.extend(page)
            if len(page) < self.max_entries:
                return entries
            # The bound stays inclusive; entries on it are fetched again and de-duplicated.
            oldest_ms = min(entry.date for entry in page)
            if oldest_ms >= _epoch_ms(upper):
                logger.warning(f"More than {self.max_entries} SGV entries share one timestamp; stopping at {upper.isoformat()}")
                return entries
            upper = datetime.fromtimestamp(oldest_ms / 1000.0, tz=timezone.utc)
        logger.warning(
            f"SGV range {start.isoformat()} to {end.isoformat()} exceeds {self.max_pages} pages of "
            f"{self.max_entries}; readings before {upper.isoformat()} were not fetched"
        )
        return entries

    async def fetch_range(self, start: datetime, end: datetime) -> list[Observation]:
        entries = await self._fetch_entries(start, end)
        observations = [
            Observation(
                id=entry.external_id,
                timestamp=entry.timestamp,
                value=to_primary_unit(entry.sgv),
                source=entry.device or self.source_label,
            )
            for entry in entries
            if entry.sgv > 0
        ]
        return dedupe_observations(observations)


__all__ = ["NightscoutClient", "NightscoutError", "NightscoutObservationSource"]
