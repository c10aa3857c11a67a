import argparse
import logging
import math
import sys
from pathlib import Path
from typing import Dict, List, Mapping, Tuple

import pandas as pd

ROOT_DIR = Path(__file__).resolve().parents[2]
sys.path.append(str(ROOT_DIR))

from backend import main  # noqa: E402
from backend.flows import feature_properties, parse_flow_key, parse_flow_value  # noqa: E402

log = logging.getLogger(__name__)


def sample_values(values: List, limit: int = 10) -> List:
    return values[:limit]


def valid_centroid(raw) -> bool:
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        return False
    try:
        return all(math.isfinite(float(c)) for c in raw)
    except (TypeError, ValueError):
        return False


def flow_table(features: List[dict]) -> pd.DataFrame:
    rows = []
    for index, feature in enumerate(features):
        props = feature_properties(feature)
        if props is None:
            continue
        flows = props.get("flows") or {}
        if not isinstance(flows, Mapping):
            continue
        for key, value in flows.items():
            rows.append({
                "source": index,
                "key": key,
                "value": value,
                "target": parse_flow_key(key),
                "amount": parse_flow_value(value),
            })
    df = pd.DataFrame(rows, columns=["source", "key", "value", "target", "amount"])
    # same per-entry rules the loader applies; rejected entries become NaN
    df["target"] = pd.to_numeric(df["target"], errors="coerce")
    df["amount"] = pd.to_numeric(df["amount"], errors="coerce")
    return df


def check_dataset(geo: dict) -> Tuple[Dict[str, str], List[str]]:
    issues: List[str] = []
    summary: Dict[str, str] = {}
    features = geo.get("features") if isinstance(geo, dict) else None
    if not isinstance(features, list):
        return {"features": "0"}, ["not_a_feature_collection"]

    props = [feature_properties(f) for f in features]
    missing_props = [i for i, p in enumerate(props) if p is None]
    if missing_props:
        issues.append(f"missing_properties:{len(missing_props)} sample={sample_values(missing_props)}")

    names = pd.Series(
        [p.get("name") if p is not None else None for p in props],
        dtype="object",
    )
    missing_names = int(names.isna().sum()) - len(missing_props)
    if missing_names:
        issues.append(f"missing_name:{missing_names}")
    duplicated = names.dropna()
    duplicated = sorted(set(duplicated[duplicated.duplicated()].tolist()))
    if duplicated:
        issues.append(f"duplicate_names:{len(duplicated)} sample={sample_values(duplicated)}")

    bad_centroids = [
        i for i, p in enumerate(props)
        if p is not None and not valid_centroid(p.get("centroid"))
    ]
    if bad_centroids:
        issues.append(f"bad_centroid:{len(bad_centroids)} sample={sample_values(bad_centroids)}")

    bad_flow_maps = [
        i for i, p in enumerate(props)
        if p is not None and p.get("flows") and not isinstance(p.get("flows"), Mapping)
    ]
    if bad_flow_maps:
        issues.append(f"flows_not_mapping:{len(bad_flow_maps)} sample={sample_values(bad_flow_maps)}")

    df = flow_table(features)
    bad_keys = df[df["target"].isna()]
    if not bad_keys.empty:
        issues.append(f"non_integer_keys:{len(bad_keys)} sample={sample_values(bad_keys['key'].tolist())}")

    bad_values = df[df["amount"].isna()]
    if not bad_values.empty:
        issues.append(f"non_numeric_values:{len(bad_values)}")

    targets = df["target"].dropna()
    dangling = targets[(targets < 0) | (targets >= len(features))]
    if not dangling.empty:
        unique_missing = sorted({int(t) for t in dangling.tolist()})
        issues.append(f"dangling_targets:{len(dangling)} sample={sample_values(unique_missing)}")

    self_flows = df[df["source"] == df["target"]]
    if not self_flows.empty:
        issues.append(f"self_flows:{len(self_flows)}")

    summary["features"] = str(len(features))
    summary["flows"] = str(len(df))
    summary["inflows"] = str(int((df["amount"] > 0).sum()))
    summary["outflows"] = str(int((df["amount"] < 0).sum()))
    return summary, issues


def main_cli(path: str, warn_only: bool) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    try:
        geo = main.read_counties(path)
    except (OSError, ValueError) as err:
        log.error("Could not read %s: %s", path, err)
        return 0 if warn_only else 1

    summary, issues = check_dataset(geo)
    print(
        f"{path} features={summary.get('features', '0')}"
        + f" flows={summary.get('flows', '0')}"
        + f" inflows={summary.get('inflows', '0')}"
        + f" outflows={summary.get('outflows', '0')}"
    )
    if issues:
        print("\nIssues:")
        for issue in issues:
            print(f"  - {issue}")

    if issues and not warn_only:
        return 1
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Validate the county flow dataset.")
    parser.add_argument("--path", default=main.COUNTIES_PATH)
    parser.add_argument(
        "--warn-only",
        action="store_true",
        help="Always exit 0 even if issues are found.",
    )
    args = parser.parse_args()
    raise SystemExit(main_cli(args.path, args.warn_only))
