import argparse
import json
import logging
import os
import sys

import requests

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from backend import main  # noqa: E402

log = logging.getLogger(__name__)


def round_coords(coords, places=5):
    if isinstance(coords, (list, tuple)):
        return [round_coords(c, places) for c in coords]
    if isinstance(coords, float):
        return round(coords, places)
    return coords


def compact_feature(feature, places=5):
    props = feature.get("properties")
    if isinstance(props, dict):
        props = dict(props)
        if props.get("centroid") is not None:
            props["centroid"] = round_coords(props["centroid"], places)
    geom = feature.get("geometry")
    if isinstance(geom, dict) and "coordinates" in geom:
        geom = dict(geom)
        geom["coordinates"] = round_coords(geom["coordinates"], places)
    return {
        "type": "Feature",
        "properties": props,
        "geometry": geom,
    }


def build_counties(url, places=5):
    resp = requests.get(url, timeout=main.FETCH_TIMEOUT)
    resp.raise_for_status()
    data = resp.json()
    features = data.get("features") if isinstance(data, dict) else None
    if not isinstance(features, list):
        raise ValueError(f"{url} did not return a FeatureCollection")
    return {
        "type": "FeatureCollection",
        "features": [compact_feature(f or {}, places) for f in features],
    }


def write_geojson(path, data):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, separators=(",", ":"))


def main_cli(url, out_path, places):
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    out_dir = os.path.dirname(out_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    counties = build_counties(url, places)
    write_geojson(out_path, counties)
    log.info("Wrote %d counties to %s", len(counties["features"]), out_path)
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Download and compact the county flow dataset.")
    parser.add_argument("--url", default=main.COUNTIES_URL)
    parser.add_argument("--out", default=main.COUNTIES_PATH)
    parser.add_argument("--places", type=int, default=5, help="Decimal places kept in coordinates.")
    args = parser.parse_args()
    raise SystemExit(main_cli(args.url, args.out, args.places))
