"""Unit tests for station ranking and distances."""

import pytest

from airwatch.models import Station, NO_RADIUS
from airwatch.services.station_locator import (
    StationSearchError,
    haversine_km,
    city_from_location,
    rank_stations,
    parse_radius,
)


class TestHaversine:
    """Test great-circle distance."""

    def test_same_point_is_zero(self):
        assert haversine_km(52.23, 21.01, 52.23, 21.01) == 0.0

    def test_warsaw_to_krakow(self):
        """Warsaw to Krakow is roughly 250 km."""
        distance = haversine_km(52.2297, 21.0122, 50.0647, 19.9450)
        assert 245.0 < distance < 255.0

    def test_symmetric(self):
        assert haversine_km(52.0, 21.0, 50.0, 19.0) == pytest.approx(haversine_km(50.0, 19.0, 52.0, 21.0))


class TestCityFromLocation:
    """Test city extraction from location text."""

    def test_street_and_city(self):
        assert city_from_location("Marszałkowska 1, Warszawa") == "Warszawa"

    def test_plain_city(self):
        assert city_from_location("  Kraków ") == "Kraków"

    def test_missing_city_after_comma(self):
        with pytest.raises(StationSearchError):
            city_from_location("Marszałkowska 1, ")

    def test_empty_text(self):
        with pytest.raises(StationSearchError):
            city_from_location("   ")


class TestRankStations:
    """Test station selection and ordering."""

    def test_city_match_sorted_by_distance(self, stations):
        """Stations of the searched city win, nearest first."""
        result = rank_stations(stations, "Kondratowicza, Warszawa", 52.29, 21.04)

        assert result.matched_city is True
        assert [s.station_id for s in result.stations] == [117, 114]
        assert all(s.has_distance for s in result.stations)
        assert result.status == "Found stations in: Warszawa"

    def test_city_match_is_case_insensitive(self, stations):
        result = rank_stations(stations, "warszawa", 0.0, 0.0)

        assert result.matched_city is True
        assert {s.station_id for s in result.stations} == {114, 117}

    def test_unknown_origin_leaves_distance_unset(self, stations):
        result = rank_stations(stations, "Warszawa", 0.0, 0.0)
        assert all(s.distance_km == -1.0 for s in result.stations)

    def test_single_zero_coordinate_is_unknown_origin(self, stations):
        result = rank_stations(stations, "Warszawa", 52.23, 0.0)
        assert all(s.distance_km == -1.0 for s in result.stations)

    def test_no_city_match_without_origin(self, stations):
        result = rank_stations(stations, "Gdańsk", 0.0, 0.0)

        assert result.matched_city is False
        assert result.stations == []

    def test_nearest_station_without_radius(self, stations):
        """Without a radius only the single nearest station is used."""
        result = rank_stations(stations, "Piaseczno", 52.08, 21.02)

        assert result.matched_city is False
        assert [s.station_id for s in result.stations] == [114]
        assert result.nearby_cities == ["Warszawa"]

    def test_stations_within_radius(self, stations):
        result = rank_stations(stations, "Piaseczno", 52.08, 21.02, radius_km=30.0)

        assert [s.station_id for s in result.stations] == [114, 117]
        assert all(s.distance_km <= 30.0 for s in result.stations)
        assert "Found nearby stations in: Warszawa" in result.status

    def test_nothing_within_radius(self, stations):
        result = rank_stations(stations, "Gdańsk", 54.35, 18.65, radius_km=5.0)

        assert result.stations == []
        assert result.status.endswith("No stations within the given radius.")

    def test_accepts_station_records(self):
        records = [{"stationId": 1, "stationName": "A", "lat": 52.0, "lon": 21.0, "cityName": "X"}]

        result = rank_stations(records, "X", 52.0, 21.0)

        assert isinstance(result.stations[0], Station)
        assert result.stations[0].distance_km == 0.0


class TestParseRadius:
    """Test radius field parsing."""

    def test_plain_number(self):
        assert parse_radius("12.5") == 12.5

    def test_comma_decimal(self):
        assert parse_radius("7,5") == 7.5

    @pytest.mark.parametrize("text", ["", "abc", "0", "-3"])
    def test_invalid_or_non_positive(self, text):
        assert parse_radius(text) == NO_RADIUS
