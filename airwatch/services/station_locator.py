"""Station locator: distances from the searched location and station ranking."""

import math
from typing import Iterable, List, Optional, Union, Dict, Any

import structlog

from ..models.station import Station, StationSearchResult, NOT_COMPUTED
from ..models.session import NO_RADIUS, SessionLocation


logger = structlog.get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


class StationSearchError(ValueError):
    """The location text does not name a city."""


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two WGS84 points in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2.0) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(d_lon / 2.0) ** 2)
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_KM * c


def city_from_location(location: str) -> str:
    """Extract the city from 'street, city' style input or plain city text."""
    if "," in location:
        parts = [part.strip() for part in location.split(",") if part.strip()]
        city = parts[1] if len(parts) >= 2 else ""
    else:
        city = location.strip()

    if not city:
        raise StationSearchError(f"Invalid location format: {location!r}")
    return city


def rank_stations(stations: Iterable[Union[Station, Dict[str, Any]]],
                  location: str,
                  latitude: float,
                  longitude: float,
                  radius_km: Optional[float] = None) -> StationSearchResult:
    """Choose and order the stations for a search.

    Stations in the searched city win. Otherwise, when the location was
    geocoded, the stations within ``radius_km`` are used, or the single
    nearest station when no radius was given. Distances are only computed
    for a geocoded location; otherwise they stay at -1.
    """
    city = city_from_location(location)
    origin = SessionLocation(input=location, latitude=latitude, longitude=longitude)
    origin_known = origin.has_coordinates

    all_stations: List[Station] = []
    for item in stations:
        station = item if isinstance(item, Station) else Station.model_validate(item)
        if origin_known:
            distance = haversine_km(latitude, longitude, station.latitude, station.longitude)
        else:
            distance = NOT_COMPUTED
        all_stations.append(station.with_distance(distance))

    in_city = [s for s in all_stations if s.city_name.lower() == city.lower()]
    if in_city:
        if origin_known:
            in_city.sort(key=lambda s: s.distance_km)
        logger.info("Found stations in city", city=city, stations=len(in_city))
        return StationSearchResult(city=city, stations=in_city, matched_city=True)

    if not origin_known:
        logger.info("No stations found in city", city=city)
        return StationSearchResult(city=city)

    if radius_km is not None and radius_km > 0:
        nearby = [s for s in all_stations if s.distance_km <= radius_km]
    else:
        nearby = [min(all_stations, key=lambda s: s.distance_km)] if all_stations else []
    nearby.sort(key=lambda s: s.distance_km)

    nearby_cities: List[str] = []
    for station in nearby:
        if station.city_name not in nearby_cities:
            nearby_cities.append(station.city_name)

    logger.info("No stations found in city, using nearby stations",
               city=city,
               radius_km=radius_km,
               stations=len(nearby),
               nearby_cities=nearby_cities)
    return StationSearchResult(city=city, stations=nearby, nearby_cities=nearby_cities)


def parse_radius(text: str) -> float:
    """Parse a radius field; comma decimals allowed, invalid or <= 0 means no radius."""
    try:
        radius = float(text.strip().replace(",", "."))
    except ValueError:
        return NO_RADIUS
    return radius if radius > 0 else NO_RADIUS


__all__ = [
    "StationSearchError",
    "haversine_km",
    "city_from_location",
    "rank_stations",
    "parse_radius",
    "EARTH_RADIUS_KM",
]
