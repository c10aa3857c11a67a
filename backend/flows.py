import logging
import math
from bisect import bisect_right
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

log = logging.getLogger(__name__)

DEFAULT_REGION_NAME = "Philadelphia, PA"

Color = Tuple[int, int, int]

IN_FLOW_COLORS: Tuple[Color, ...] = (
    (255, 255, 204),
    (199, 233, 180),
    (127, 205, 187),
    (65, 182, 196),
    (29, 145, 192),
    (34, 94, 168),
    (12, 44, 132),
)

OUT_FLOW_COLORS: Tuple[Color, ...] = (
    (255, 255, 178),
    (254, 217, 118),
    (254, 178, 76),
    (253, 141, 60),
    (252, 78, 42),
    (227, 26, 28),
    (177, 0, 38),
)


@dataclass(frozen=True)
class Region:
    index: int
    name: Optional[str]
    centroid: Optional[Tuple[float, float]] = field(compare=False)
    flows: Mapping[int, float] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        # read-only view; the loaded dataset is shared across selections
        object.__setattr__(self, "flows", MappingProxyType(dict(self.flows)))


@dataclass
class Arc:
    source: Region
    target: Region
    value: float
    bucket: Optional[int] = None


@dataclass(frozen=True)
class Palette:
    inflow: Tuple[Color, ...]
    outflow: Tuple[Color, ...]

    def __post_init__(self):
        if not self.inflow or len(self.inflow) != len(self.outflow):
            raise ValueError("inflow and outflow palettes must be non-empty and the same length")

    @property
    def size(self) -> int:
        return len(self.inflow)

    def endpoint_colors(self, arc: Arc) -> Tuple[Color, Color]:
        """Source and target colors for a classified arc.

        Positive values (net inflow to the selected region) start on the
        inflow ramp and end on the outflow ramp; everything else is the
        reverse, so the color along an arc always reads in the flow direction.
        """
        if arc.bucket is None:
            raise ValueError("arc has not been classified")
        if arc.value > 0:
            return self.inflow[arc.bucket], self.outflow[arc.bucket]
        return self.outflow[arc.bucket], self.inflow[arc.bucket]

    def legend(self) -> List[Color]:
        # dark blue (net gain) on the left through yellow to red (net loss)
        return list(reversed(self.inflow)) + list(self.outflow)


DEFAULT_PALETTE = Palette(inflow=IN_FLOW_COLORS, outflow=OUT_FLOW_COLORS)


def _parse_centroid(raw, index: int) -> Optional[Tuple[float, float]]:
    if raw is None:
        return None
    try:
        lon, lat = raw
        centroid = (float(lon), float(lat))
    except (TypeError, ValueError):
        log.warning("Region %d has malformed centroid %r", index, raw)
        return None
    if not all(math.isfinite(c) for c in centroid):
        log.warning("Region %d has non-finite centroid %r", index, raw)
        return None
    return centroid


def parse_flow_key(key) -> Optional[int]:
    """Region index for a flow key, or None if the key is not an integer."""
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return key
    if not isinstance(key, str):
        return None
    try:
        return int(key)
    except ValueError:
        return None


def parse_flow_value(value) -> Optional[float]:
    """Finite flow magnitude, or None for booleans, non-numbers, NaN and inf."""
    if isinstance(value, bool):
        return None
    try:
        magnitude = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(magnitude):
        return None
    return magnitude


def _parse_flows(raw, index: int) -> Dict[int, float]:
    flows: Dict[int, float] = {}
    if not raw:
        return flows
    if not isinstance(raw, Mapping):
        log.warning("Region %d flows is not a mapping; ignoring", index)
        return flows
    for key, value in raw.items():
        target = parse_flow_key(key)
        if target is None:
            log.warning("Region %d: dropping flow with non-integer key %r", index, key)
            continue
        magnitude = parse_flow_value(value)
        if magnitude is None:
            log.warning("Region %d: dropping flow %r with non-numeric value %r", index, key, value)
            continue
        flows[target] = magnitude
    return flows


def feature_properties(feature) -> Optional[Mapping]:
    if not isinstance(feature, Mapping):
        return None
    props = feature.get("properties")
    return props if isinstance(props, Mapping) else None


def parse_features(features: Iterable[dict]) -> List[Region]:
    """Turn GeoJSON-style features into a positional list of Regions.

    Every feature yields exactly one Region so that flow keys keep pointing
    at the right position, even when a feature is missing its properties.
    """
    regions: List[Region] = []
    for index, feature in enumerate(features):
        props = feature_properties(feature)
        if props is None:
            regions.append(Region(index=index, name=None, centroid=None, flows={}))
            continue
        name = props.get("name")
        regions.append(Region(
            index=index,
            name=str(name) if name is not None else None,
            centroid=_parse_centroid(props.get("centroid"), index),
            flows=_parse_flows(props.get("flows"), index),
        ))
    return regions


def find_region(dataset: List[Region], name: str) -> Optional[Region]:
    for region in dataset:
        if region.name is not None and region.name == name:
            return region
    return None


def extract_arcs(
    dataset: List[Region],
    selected: Optional[Region] = None,
    default_name: str = DEFAULT_REGION_NAME,
) -> Optional[List[Arc]]:
    if not dataset:
        return None
    if selected is None:
        selected = find_region(dataset, default_name)
    if selected is None:
        return None

    arcs: List[Arc] = []
    for target_index, value in selected.flows.items():
        if not 0 <= target_index < len(dataset):
            log.warning(
                "Skipping flow from region %d to missing region %d",
                selected.index,
                target_index,
            )
            continue
        arcs.append(Arc(source=selected, target=dataset[target_index], value=value))
    return arcs


def quantile_thresholds(values: List[float], bins: int) -> List[float]:
    clean = sorted(v for v in values if v is not None and not math.isnan(v))
    if not clean:
        return []
    n = len(clean)

    def pct(p: float) -> float:
        # linear interpolation between order statistics, as d3.quantile
        pos = (n - 1) * p
        lo = int(math.floor(pos))
        hi = min(lo + 1, n - 1)
        return float(clean[lo] + (clean[hi] - clean[lo]) * (pos - lo))

    return [pct(i / bins) for i in range(1, bins)]


def classify(arcs: List[Arc], bins: int = DEFAULT_PALETTE.size) -> List[Arc]:
    """Assign each arc an equal-population bucket by absolute magnitude."""
    if bins < 1:
        raise ValueError(f"bins must be at least 1, got {bins}")
    if not arcs:
        return arcs
    thresholds = quantile_thresholds([abs(a.value) for a in arcs], bins)
    for arc in arcs:
        arc.bucket = bisect_right(thresholds, abs(arc.value))
    return arcs


SelectionCallback = Callable[[Optional[Region], Optional[List[Arc]]], None]


class FlowSelector:
    """Holds the current selection and reruns the arc pipeline on change."""

    def __init__(
        self,
        dataset: List[Region],
        palette: Palette = DEFAULT_PALETTE,
        default_name: str = DEFAULT_REGION_NAME,
    ):
        self.dataset = dataset
        self.palette = palette
        self.default_name = default_name
        self.selected: Optional[Region] = None
        self.arcs: Optional[List[Arc]] = None
        self._subscribers: List[SelectionCallback] = []

    def subscribe(self, callback: SelectionCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def resolve(self, selected: Optional[Region] = None) -> Optional[Region]:
        if selected is not None:
            return selected
        if not self.dataset:
            return None
        return find_region(self.dataset, self.default_name)

    def recompute(self, selected: Optional[Region] = None) -> Optional[List[Arc]]:
        arcs = extract_arcs(self.dataset, selected, self.default_name)
        if arcs is None:
            return None
        return classify(arcs, self.palette.size)

    def select(self, selected: Optional[Region] = None) -> Optional[List[Arc]]:
        region = self.resolve(selected)
        arcs = self.recompute(region) if region is not None else None
        self.selected, self.arcs = region, arcs
        for callback in list(self._subscribers):
            try:
                callback(region, arcs)
            except Exception:
                log.exception("Selection subscriber %r failed", callback)
        return arcs

    def select_index(self, index: int) -> Optional[List[Arc]]:
        if not 0 <= index < len(self.dataset):
            raise LookupError(f"no region at index {index}")
        return self.select(self.dataset[index])

    def select_name(self, name: str) -> Optional[List[Arc]]:
        region = find_region(self.dataset, name)
        if region is None:
            raise LookupError(f"no region named {name!r}")
        return self.select(region)
