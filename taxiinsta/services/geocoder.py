"""Free-text address lookup against a Nominatim-compatible search API.

Any failure (network, HTTP status, malformed payload) is reported as no
match; geocoding never takes a request down with it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from taxiinsta.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float
    label: str | None = None


class Geocoder:
    def __init__(
        self,
        *,
        base_url: str,
        timeout_s: float = 4.0,
        user_agent: str = "taxiinsta-dispatch/1.0",
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url
        self.timeout_s = timeout_s
        self.user_agent = user_agent
        self._client = client

    def _get(self, params: dict) -> httpx.Response:
        headers = {"User-Agent": self.user_agent, "Accept": "application/json"}
        if self._client is not None:
            return self._client.get(self.base_url, params=params, headers=headers, timeout=self.timeout_s)
        with httpx.Client(timeout=self.timeout_s) as client:
            return client.get(self.base_url, params=params, headers=headers)

    def lookup(self, query: str | None) -> GeoPoint | None:
        q = (query or "").strip()
        if not q:
            return None

        try:
            resp = self._get({"q": q, "format": "jsonv2", "limit": 1})
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("geocoder lookup failed for %r: %s", q, exc)
            return None

        if not isinstance(data, list) or not data:
            return None
        first = data[0]
        try:
            lat = float(first["lat"])
            lon = float(first["lon"])
        except (KeyError, TypeError, ValueError):
            logger.warning("geocoder returned an unusable result for %r", q)
            return None
        if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
            return None
        return GeoPoint(lat=lat, lon=lon, label=first.get("display_name"))


_geocoder: Geocoder | None = None


def get_geocoder() -> Geocoder:
    global _geocoder
    if _geocoder is None:
        _geocoder = Geocoder(
            base_url=settings.GEOCODER_URL,
            timeout_s=settings.GEOCODER_TIMEOUT_SECONDS,
            user_agent=settings.GEOCODER_USER_AGENT,
        )
    return _geocoder
