"""Best-effort IP geolocation."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

GEOIP_URL: str = "http://ip-api.com/json/{ip}"
GEOIP_FIELDS: str = "status,country,countryCode,regionName,city"


@dataclass(frozen=True)
class GeoIpResult:
    country: str | None = None
    city: str | None = None
    region: str | None = None
    country_code: str | None = None


EMPTY_RESULT = GeoIpResult()
LOCAL_RESULT = GeoIpResult(country="Local", city="localhost", country_code="LO")


def _is_local(ip: str) -> bool:
    return ip in {"127.0.0.1", "::1", "localhost", "testclient"} or ip.startswith(("10.", "192.168."))


class GeoIpResolver:
    """Resolves an address to country/city; never raises."""

    def __init__(self, *, enabled: bool = True, timeout: float = 3.0, client: httpx.Client | None = None) -> None:
        self._enabled = enabled
        self._timeout = timeout
        self._client = client

    def resolve(self, ip: str | None) -> GeoIpResult:
        if not ip or ip == "unknown":
            return EMPTY_RESULT
        if _is_local(ip):
            return LOCAL_RESULT
        if not self._enabled:
            return EMPTY_RESULT
        try:
            client = self._client or httpx
            response = client.get(GEOIP_URL.format(ip=ip), params={"fields": GEOIP_FIELDS}, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[GEOIP] Lookup failed: %s", exc)
            return EMPTY_RESULT
        if data.get("status") != "success":
            return EMPTY_RESULT
        return GeoIpResult(
            country=data.get("country") or None,
            city=data.get("city") or None,
            region=data.get("regionName") or None,
            country_code=data.get("countryCode") or None,
        )
