# stina/models/domain/places_domain.py
"""
Venue search domain: tag/place-type mapping, feature extraction and ranking.
"""

import math
import re
from typing import Any

from pydantic import BaseModel, Field

TAG_TO_PLACE_TYPE = {
    "coffee": "cafe",
    "restaurant": "restaurant",
    "lunch": "restaurant",
    "dinner": "restaurant",
    "meeting_room": "establishment",
    "hotel": "lodging",
    "bar": "bar",
    "gym": "gym",
    "hospital": "hospital",
    "store": "store",
    "shopping": "shopping_mall",
    "bank": "bank",
    "gas": "gas_station",
}

PLACE_TYPE_TO_TAGS = {
    "cafe": ["coffee", "casual"],
    "restaurant": ["lunch", "dinner", "restaurant"],
    "bar": ["bar", "drinks"],
    "establishment": ["meeting_room", "business"],
    "lodging": ["hotel"],
    "gym": ["fitness", "gym"],
    "store": ["shopping", "retail"],
    "shopping_mall": ["shopping"],
    "bank": ["bank", "finance"],
    "gas_station": ["gas", "fuel"],
}

PRICE_LEVELS = ["Budget-friendly", "Inexpensive", "Moderate", "Expensive", "Very expensive"]

GENERIC_TAGS = {"venue", "place"}

_LAT_LNG = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*$")


class Place(BaseModel):
    """One provider search hit."""

    place_id: str
    name: str
    address: str = ""
    rating: float | None = None
    user_ratings_total: int | None = None
    price_level: int | None = None
    types: list[str] = Field(default_factory=list)
    lat: float | None = None
    lng: float | None = None
    open_now: bool | None = None

    @classmethod
    def from_google(cls, data: dict[str, Any]) -> "Place":
        location = data.get("geometry", {}).get("location", {})
        return cls(
            place_id=data.get("place_id", ""),
            name=data.get("name", ""),
            address=data.get("formatted_address", ""),
            rating=data.get("rating"),
            user_ratings_total=data.get("user_ratings_total"),
            price_level=data.get("price_level"),
            types=data.get("types", []),
            lat=location.get("lat"),
            lng=location.get("lng"),
            open_now=data.get("opening_hours", {}).get("open_now"),
        )


class Venue(BaseModel):
    name: str
    address: str
    rating: float
    distance_m: int | None = None
    tags: list[str]
    features: list[str]
    place_id: str
    price_level: int | None = None
    open_now: bool | None = None
    lat: float | None = None
    lng: float | None = None
    score: float


def build_search_query(tags: list[str]) -> str:
    return " ".join(tag for tag in tags if tag.lower() not in GENERIC_TAGS)


def place_type_for_tags(tags: list[str]) -> str | None:
    for tag in tags:
        place_type = TAG_TO_PLACE_TYPE.get(tag.lower())
        if place_type:
            return place_type
    return None


def tags_from_place_types(place_types: list[str], requested_tags: list[str]) -> list[str]:
    tags = list(dict.fromkeys(requested_tags))
    for place_type in place_types:
        for tag in PLACE_TYPE_TO_TAGS.get(place_type, []):
            if tag not in tags:
                tags.append(tag)
    return tags


def features_from_place(place: Place) -> list[str]:
    features = []
    if place.rating and place.rating > 4.0:
        features.append("Highly rated")
    if place.price_level is not None and 0 <= place.price_level < len(PRICE_LEVELS):
        features.append(PRICE_LEVELS[place.price_level])
    if place.open_now:
        features.append("Open now")
    if place.user_ratings_total and place.user_ratings_total > 100:
        features.append("Popular")
    if "cafe" in place.types:
        features.extend(["WiFi likely", "Good for meetings"])
    if "restaurant" in place.types:
        features.append("Dine-in available")
    if "establishment" in place.types:
        features.append("Business-friendly")
    return features


def parse_coordinates(location: str) -> tuple[float, float] | None:
    """'51.5,-0.12' style locations give a centre to measure distance from."""
    match = _LAT_LNG.match(location)
    if not match:
        return None
    return float(match.group(1)), float(match.group(2))


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    radius = 6_371_000
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * radius * math.asin(math.sqrt(a))


def rank_venues(
    places: list[Place], requested_tags: list[str], location: str, radius_m: int, limit: int
) -> list[Venue]:
    """
    Score = 0.7 * rating + 0.3 * secondary term. The secondary term is
    proximity when the search centre has coordinates, popularity otherwise.
    """
    centre = parse_coordinates(location)
    venues = []

    for place in places:
        distance = None
        if centre and place.lat is not None and place.lng is not None:
            distance = round(haversine_m(centre[0], centre[1], place.lat, place.lng))
            if distance > radius_m:
                continue

        rating = place.rating or 0.0
        if distance is not None:
            secondary = max(0.0, (radius_m - distance) / radius_m)
        else:
            secondary = min(1.0, math.log10(1 + (place.user_ratings_total or 0)) / 3)

        venues.append(
            Venue(
                name=place.name,
                address=place.address,
                rating=rating,
                distance_m=distance,
                tags=tags_from_place_types(place.types, requested_tags),
                features=features_from_place(place),
                place_id=place.place_id,
                price_level=place.price_level,
                open_now=place.open_now,
                lat=place.lat,
                lng=place.lng,
                score=round(rating * 0.7 + secondary * 0.3, 4),
            )
        )

    venues.sort(key=lambda v: v.score, reverse=True)
    return venues[:limit]


def venue_recommendations(venues: list[Venue], tags: list[str]) -> list[str]:
    if not venues:
        return [
            f"No venues found matching tags: {', '.join(tags)}. "
            "Consider a virtual meeting or a different location."
        ]

    top = max(venues, key=lambda v: v.rating)
    recommendations = [f"Top recommended: {top.name} ({top.rating}★)"]

    if "coffee" in tags:
        recommendations.append("For coffee meetings, arrive early to secure a quiet table.")
    if "lunch" in tags or "restaurant" in tags:
        recommendations.append("Make reservations in advance for business meals.")
    if "meeting_room" in tags:
        recommendations.append("Book meeting rooms in advance and confirm AV requirements.")
    return recommendations
