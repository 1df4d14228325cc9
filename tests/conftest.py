"""Shared fixtures for takeout_location_fixer tests"""

import datetime as dt
import json

import pytest

from takeout_location_fixer import LocationIndex, LocationSample

UTC = dt.timezone.utc


def utc(*args):
    return dt.datetime(*args, tzinfo=UTC)


SAMPLE_RECORDS = {
    "locations": [
        {
            "latitudeE7": 258135945,
            "longitudeE7": 81338558,
            "accuracy": 16,
            "source": "WIFI",
            "timestamp": "2019-04-19T20:00:00Z",
        },
        {
            "latitudeE7": 395107349,
            "longitudeE7": -91427899,
            "accuracy": 12,
            "source": "GPS",
            "timestamp": "2019-04-19T20:08:28.785Z",
        },
        {
            "latitudeE7": 258135945,
            "longitudeE7": 81338558,
            "timestamp": "2020-04-19T20:01:28.785Z",
        },
        {
            "latitudeE7": -338688197,
            "longitudeE7": 1512092955,
            "timestamp": "2021-01-01T10:00:00.000+11:00",
        },
        {
            "latitudeE7": 407127753,
            "longitudeE7": -740059728,
            "timestampMs": "1609459200000",
        },
    ]
}


@pytest.fixture
def records_file(tmp_path):
    """Write the sample Records.json and return its path"""
    path = tmp_path / "Records.json"
    path.write_text(json.dumps(SAMPLE_RECORDS))
    return path


@pytest.fixture
def write_records(tmp_path):
    """Write arbitrary text as Records.json"""

    def _write(content, name="Records.json"):
        path = tmp_path / name
        path.write_text(content if isinstance(content, str) else json.dumps(content))
        return path

    return _write


@pytest.fixture
def scenario_index():
    """The two-sample index used throughout the matching scenarios"""
    return LocationIndex(
        [
            LocationSample(utc(2019, 4, 19, 20, 0, 0), 258135945, 81338558),
            LocationSample(utc(2019, 4, 19, 20, 8, 28, 785000), 395107349, -91427899),
        ]
    )
