"""
Google Places Text Search adapter for venue discovery.
"""

from typing import Protocol

from stina.errors import ProviderError
from stina.infrastructure.observability.logging import get_logger
from stina.models.domain.places_domain import Place
from stina.services.provider_http import ProviderHttpClient

logger = get_logger(__name__)

PLACES_TEXT_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/textsearch/json"

# Places reports failures in the body with HTTP 200
STATUS_KINDS = {
    "OVER_QUERY_LIMIT": "rate_limited",
    "REQUEST_DENIED": "failed",
    "INVALID_REQUEST": "invalid_input",
    "NOT_FOUND": "not_found",
    "UNKNOWN_ERROR": "unavailable",
}


class PlacesProvider(Protocol):
    async def search(
        self, query: str, location: str, radius_m: int, place_type: str | None = None
    ) -> list[Place]: ...


class GooglePlacesClient(ProviderHttpClient):
    provider_name = "Google Places"

    def __init__(self, api_key: str | None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key

    async def search(
        self, query: str, location: str, radius_m: int, place_type: str | None = None
    ) -> list[Place]:
        """
        Text search around a free-text or "lat,lng" location.

        Raises:
            ProviderError: on HTTP failure or a non-OK Places status
        """
        if not self.api_key:
            raise ProviderError("Places API key is not configured", kind="unavailable")

        search_text = f"{query} near {location}".strip() if query else location
        params = {"query": search_text, "radius": radius_m, "key": self.api_key}
        if place_type:
            params["type"] = place_type

        logger.info(
            "Searching venues",
            query=search_text,
            radius_m=radius_m,
            place_type=place_type,
        )

        response = await self._request_with_retry("GET", PLACES_TEXT_SEARCH_URL, params=params)
        data = self._handle_api_response(response, "text_search")

        status = data.get("status", "UNKNOWN_ERROR")
        if status == "ZERO_RESULTS":
            return []
        if status != "OK":
            raise ProviderError(
                f"Google Places error: {data.get('error_message') or status}",
                kind=STATUS_KINDS.get(status, "failed"),
            )

        places = [Place.from_google(item) for item in data.get("results", [])]
        logger.info("Venue search completed", result_count=len(places))
        return places
