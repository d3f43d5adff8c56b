"""
Tests for Socrata query construction and record conversion (no network).
"""

import pandas as pd
import pytest
import requests

from crime_risk.io_utils import load_params
from crime_risk.qa import DEFAULT_CRS, validate_bounds
from crime_risk.sources import (
    DataFetchError,
    PointSource,
    build_soql_params,
    fetch_source,
    load_point_sources,
    records_to_points,
)


@pytest.fixture
def weapons():
    return PointSource(
        name="target",
        dataset_id="ijzp-q8t2",
        date_field="date",
        legend="Weapons_Violations",
        category_field="primary_type",
        category_value="WEAPONS VIOLATION",
        id_field="id",
    )


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.exceptions.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


class FakeSession:
    """Serves canned pages in order and records the params it was called with."""

    def __init__(self, pages, status=200):
        self.pages = list(pages)
        self.status = status
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append(params)
        return FakeResponse(self.pages.pop(0) if self.pages else [], self.status)


class TestBuildSoqlParams:
    """Tests for build_soql_params."""

    def test_category_and_year_filter(self, weapons):
        params = build_soql_params(weapons, 2017)
        assert params["$where"] == (
            "primary_type = 'WEAPONS VIOLATION' AND "
            "date between '2017-01-01T00:00:00' and '2017-12-31T23:59:59'"
        )

    def test_paging_params(self, weapons):
        params = build_soql_params(weapons, 2017, offset=100, limit=50)
        assert params["$offset"] == "100"
        assert params["$limit"] == "50"
        assert params["$order"] == ":id"

    def test_no_category(self):
        source = PointSource(name="cars", dataset_id="3c9v-pnva", date_field="creation_date", legend="Abandoned_Cars")
        assert "=" not in build_soql_params(source, 2017)["$where"]

    def test_quotes_escaped(self, weapons):
        weapons.category_value = "O'HARE"
        assert "'O''HARE'" in build_soql_params(weapons, 2017)["$where"]

    def test_url(self, weapons):
        assert weapons.url == "https://data.cityofchicago.org/resource/ijzp-q8t2.json"


class TestFetchSource:
    """Tests for fetch_source paging and failures."""

    def test_pages_until_short_page(self, weapons):
        session = FakeSession([[{"id": "1"}, {"id": "2"}], [{"id": "3"}]])
        df = fetch_source(weapons, 2017, session=session, page_size=2)
        assert len(df) == 3
        assert [c["$offset"] for c in session.calls] == ["0", "2"]

    def test_empty_result_raises(self, weapons):
        with pytest.raises(DataFetchError):
            fetch_source(weapons, 2017, session=FakeSession([[]]))

    def test_http_error_raises(self, weapons):
        with pytest.raises(DataFetchError):
            fetch_source(weapons, 2017, session=FakeSession([[{"id": "1"}]], status=500))


class TestRecordsToPoints:
    """Tests for records_to_points."""

    @pytest.fixture
    def raw(self):
        return pd.DataFrame({
            "id": ["1", "2", "2", "3", "4"],
            "date": ["2017-03-01T10:00:00"] * 5,
            "primary_type": ["WEAPONS VIOLATION"] * 5,
            "latitude": ["41.88", "41.80", "41.80", None, "41.95"],
            "longitude": ["-87.63", "-87.70", "-87.70", "-87.60", "-87.75"],
        })

    def test_drops_missing_coords_and_duplicates(self, weapons, raw):
        points = records_to_points(raw, weapons)
        assert sorted(points["id"]) == ["1", "2", "4"]

    def test_projected_and_in_bounds(self, weapons, raw):
        points = records_to_points(raw, weapons)
        assert points.crs.to_string() == DEFAULT_CRS
        assert validate_bounds(points, "test points")

    def test_legend_and_datetime(self, weapons, raw):
        points = records_to_points(raw, weapons)
        assert (points["legend"] == "Weapons_Violations").all()
        assert pd.api.types.is_datetime64_any_dtype(points["date"])

    def test_missing_coordinate_field_raises(self, weapons, raw):
        with pytest.raises(DataFetchError):
            records_to_points(raw.drop(columns=["latitude"]), weapons)


class TestConfiguredSources:
    """The shipped params.yml defines a target and three risk factors."""

    def test_sources_load(self):
        sources = load_point_sources(load_params())
        assert sources["target"].category_value == "WEAPONS VIOLATION"
        assert len(sources) == 4
        assert len({s.legend for s in sources.values()}) == 4
