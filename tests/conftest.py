import json

import pytest

from backend import main


def county_collection():
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {
                    "name": "Philadelphia, PA",
                    "centroid": [-75.13, 40.01],
                    "flows": {"1": 10, "2": -4, "9": 3},
                },
                "geometry": None,
            },
            {
                "type": "Feature",
                "properties": {
                    "name": "Camden, NJ",
                    "centroid": [-74.97, 39.8],
                    "flows": {"0": -10},
                },
                "geometry": None,
            },
            {
                "type": "Feature",
                "properties": {"name": "Bucks, PA", "centroid": [-75.11, 40.34]},
                "geometry": None,
            },
            {"type": "Feature", "geometry": None},
        ],
    }


@pytest.fixture
def collection():
    return county_collection()


@pytest.fixture
def counties_file(tmp_path, monkeypatch, collection):
    path = tmp_path / "counties.json"
    path.write_text(json.dumps(collection), encoding="utf-8")
    monkeypatch.setattr(main, "COUNTIES_PATH", str(path))
    monkeypatch.setattr(main, "_GEO_CACHE", None)
    monkeypatch.setattr(main, "_REGION_CACHE", None)
    return path
