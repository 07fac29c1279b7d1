"""HTTP reverse geocoder speaking the Nominatim ``/reverse`` JSON API."""

from __future__ import annotations

import logging

import httpx

from .domain.contracts import GeoPoint, SlowGeocodeError

logger = logging.getLogger(__name__)


class HttpReverseGeocoder:
    """Resolve a position to a one-line address through a remote service.

    Every lookup is a network round trip, so ``fast_only`` requests are
    refused with :class:`SlowGeocodeError`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        user_agent: str = "governance-service",
        language: str = "en",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._language = language
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={"User-Agent": user_agent},
            transport=transport,
        )

    def reverse_geocode(self, point: GeoPoint, fast_only: bool = False) -> str | None:
        if fast_only:
            raise SlowGeocodeError("remote reverse geocode is not a fast operation")
        if not point.is_valid:
            return None
        try:
            response = self._client.get(
                "/reverse",
                params={
                    "format": "jsonv2",
                    "lat": f"{point.latitude:.6f}",
                    "lon": f"{point.longitude:.6f}",
                    "accept-language": self._language,
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("reverse geocode HTTP %s for %s", exc.response.status_code, point)
            raise
        except httpx.RequestError as exc:
            logger.error("reverse geocode request error for %s: %s", point, exc)
            raise

        payload = response.json()
        address = (payload.get("display_name") or "").strip()
        return address or None

    def close(self) -> None:
        self._client.close()
