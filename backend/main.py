import json
import logging
import math
import os
from typing import List, Optional

import pandas as pd
import requests
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from backend.flows import (
    DEFAULT_PALETTE,
    Arc,
    FlowSelector,
    Region,
    parse_features,
    quantile_thresholds,
)

log = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.path.join(BASE_DIR, "data")

COUNTIES_URL = os.getenv(
    "COUNTIES_URL",
    "https://raw.githubusercontent.com/visgl/deck.gl-data/master/examples/arc/counties.json",
)
COUNTIES_PATH = os.getenv("COUNTIES_PATH", os.path.join(DATA_DIR, "counties.json"))
DEFAULT_REGION = os.getenv("DEFAULT_REGION", "Philadelphia, PA")
FETCH_TIMEOUT = int(os.getenv("FETCH_TIMEOUT", "30"))
MAP_STYLE = os.getenv(
    "MAP_STYLE",
    "https://basemaps.cartocdn.com/gl/positron-nolabels-gl-style/style.json",
)
MAP_VIEW = {
    "center": [-100.0, 40.7],
    "zoom": 3,
    "pitch": 30,
    "bearing": 30,
}

app = FastAPI(title="Migration Flow Atlas API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_GEO_CACHE: Optional[dict] = None
_REGION_CACHE: Optional[List[Region]] = None


def fetch_counties(url: str, timeout: int = FETCH_TIMEOUT) -> dict:
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    return resp.json()


def read_counties(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_geo() -> dict:
    global _GEO_CACHE
    if _GEO_CACHE is not None:
        return _GEO_CACHE
    if os.path.exists(COUNTIES_PATH):
        geo = read_counties(COUNTIES_PATH)
        source = COUNTIES_PATH
    else:
        geo = fetch_counties(COUNTIES_URL)
        source = COUNTIES_URL
    if not isinstance(geo, dict) or not isinstance(geo.get("features"), list):
        raise ValueError(f"{source} is not a FeatureCollection")
    log.info("Loaded %d features from %s", len(geo["features"]), source)
    _GEO_CACHE = geo
    return geo


def load_regions() -> List[Region]:
    global _REGION_CACHE
    if _REGION_CACHE is None:
        _REGION_CACHE = parse_features(load_geo()["features"])
    return _REGION_CACHE


def _regions_or_503() -> List[Region]:
    try:
        return load_regions()
    except (OSError, requests.RequestException, ValueError) as err:
        log.error("Failed to load data: %s", err)
        raise HTTPException(status_code=503, detail="County data unavailable")


def summarize(values: List[float]) -> dict:
    clean = [v for v in values if v is not None and not math.isnan(v)]
    if not clean:
        return {
            "count": 0,
            "min": None,
            "max": None,
            "mean": None,
            "median": None,
        }
    sorted_vals = sorted(clean)
    n = len(sorted_vals)
    mid = n // 2
    median = sorted_vals[mid] if n % 2 else (sorted_vals[mid - 1] + sorted_vals[mid]) / 2
    mean = sum(sorted_vals) / n
    return {
        "count": n,
        "min": float(sorted_vals[0]),
        "max": float(sorted_vals[-1]),
        "mean": float(mean),
        "median": float(median),
    }


def arc_stats(arcs: List[Arc]) -> dict:
    stats = summarize([abs(a.value) for a in arcs])
    # zero-valued arcs are drawn with the outflow ramp, so they count as outflow
    stats["inflow"] = sum(1 for a in arcs if a.value > 0)
    stats["outflow"] = len(arcs) - stats["inflow"]
    return stats


def region_record(region: Region) -> dict:
    return {
        "index": region.index,
        "name": region.name,
        "centroid": list(region.centroid) if region.centroid else None,
    }


def arc_record(arc: Arc, width: float) -> dict:
    source_color, target_color = DEFAULT_PALETTE.endpoint_colors(arc)
    return {
        "source": region_record(arc.source),
        "target": region_record(arc.target),
        "value": arc.value,
        "bucket": arc.bucket,
        "source_color": list(source_color),
        "target_color": list(target_color),
        "width": width,
    }


@app.get("/api/config")
def config():
    return {
        "map_style": MAP_STYLE,
        "view": MAP_VIEW,
        "default_region": DEFAULT_REGION,
        "buckets": DEFAULT_PALETTE.size,
    }


@app.get("/api/palette")
def palette():
    return {
        "inflow": [list(c) for c in DEFAULT_PALETTE.inflow],
        "outflow": [list(c) for c in DEFAULT_PALETTE.outflow],
        "legend": [list(c) for c in DEFAULT_PALETTE.legend()],
    }


@app.get("/api/geo")
def geo():
    _regions_or_503()
    return load_geo()


@app.get("/api/regions")
def regions(q: Optional[str] = None):
    dataset = _regions_or_503()
    df = pd.DataFrame({
        "index": [r.index for r in dataset],
        "name": pd.Series([r.name for r in dataset], dtype="string"),
        "flow_count": [len(r.flows) for r in dataset],
    })
    df = df[df["name"].notna()]
    if q:
        df = df[df["name"].str.contains(q.strip(), case=False, regex=False)]
    df = df.sort_values(by=["name", "index"])
    return {
        "regions": [
            dict(region_record(dataset[int(idx)]), flow_count=int(count))
            for idx, count in zip(df["index"], df["flow_count"])
        ]
    }


@app.get("/api/arcs")
def arcs(
    index: Optional[int] = None,
    name: Optional[str] = None,
    stroke_width: float = 1.0,
):
    dataset = _regions_or_503()
    selector = FlowSelector(dataset, DEFAULT_PALETTE, DEFAULT_REGION)
    try:
        if index is not None:
            result = selector.select_index(index)
        elif name:
            result = selector.select_name(name)
        else:
            result = selector.select()
    except LookupError as err:
        raise HTTPException(status_code=404, detail=str(err))

    result = result or []
    magnitudes = [abs(a.value) for a in result]
    stats = arc_stats(result)

    return {
        "selected": region_record(selector.selected) if selector.selected else None,
        "arcs": [arc_record(a, stroke_width) for a in result],
        "stats": stats,
        "thresholds": quantile_thresholds(magnitudes, DEFAULT_PALETTE.size),
    }
