from __future__ import annotations
from dataclasses import dataclass
from typing import Tuple, Optional
import logging
import numpy as np
import pandas as pd
from pathlib import Path
from sklearn.model_selection import train_test_split

from complaint_survival.config import DataConfig, SplitConfig
from complaint_survival.utils import RunType

logger = logging.getLogger("complaint_survival.data")

# Expected columns
TIME_COL = "days_to_disposition"
STATUS_COL = "status"
NUM_COLS = ["latitude", "longitude"]
CAT_COLS = [
    "year_entered",
    "borough",
    "special_district",
    "unit",
    "community_board",
    "complaint_category",
    "complaint_priority",
]

SPLIT_LABELS = ("train", "validation", "test")


def load_data(file_path: str, run_type: RunType = "sample") -> pd.DataFrame:
    """Load complaint records from CSV, Parquet or pickle.

    The format is chosen from the file extension. Paths starting with
    ``http://`` or ``https://`` are handed to pandas directly.

    Args:
        file_path: Path or URL of the input file
        run_type: Type of run, used for logging only

    Returns:
        DataFrame with one complaint per row

    Raises:
        FileNotFoundError: If a local file_path does not exist
        ValueError: If the file format is not supported

    Example:
        >>> df = load_data("data/inputs/building_complaints.csv")
        >>> df.shape
        (4234, 11)
    """
    source = str(file_path)
    is_url = source.startswith(("http://", "https://"))
    path = Path(source)

    if not is_url and not path.exists():
        raise FileNotFoundError(f"Data file not found: {path}")

    suffix = Path(source.split("?", 1)[0]).suffix.lower()

    if suffix in (".csv", ".txt"):
        df = pd.read_csv(source)
    elif suffix in (".parquet", ".pq"):
        df = pd.read_parquet(source)
    elif suffix in (".pkl", ".pickle"):
        df = pd.read_pickle(source)
    else:
        raise ValueError(
            f"Unsupported file format: {suffix}. "
            f"Supported formats: .csv, .txt, .parquet, .pq, .pkl, .pickle"
        )

    logger.info(f"Loaded {len(df):,} records with {len(df.columns)} columns from {source} (run_type={run_type})")
    return df


def validate_schema(df: pd.DataFrame, data_config: Optional[DataConfig] = None) -> None:
    """Check that every configured column is present.

    Raises:
        ValueError: If required columns are missing
    """
    cfg = data_config or DataConfig()
    required = [cfg.time_column, cfg.status_column, *cfg.numeric_features, *cfg.categorical_features]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"Input data missing required columns: {missing}")


def _as_level(value) -> str:
    # CSV columns of codes with a gap are read as float: 301.0 is level "301"
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return str(int(value))
    return str(value)


def normalize_categoricals(df: pd.DataFrame, columns) -> pd.DataFrame:
    """Return a copy with categorical columns as strings and NaN for missing.

    Numeric-looking codes read from CSV (e.g. complaint category ``5``)
    become strings so that encoders never see mixed types. Integral floats
    map to the same level as the integer, so ``301.0`` and ``301`` agree
    whether or not the source column had missing values.

    Example:
        >>> normalize_categoricals(pd.DataFrame({"c": [5, None, "4A", 301.0]}), ["c"])["c"].tolist()
        ['5', nan, '4A', '301']
    """
    out = df.copy()
    for col in columns:
        values = out[col].astype(object)
        out[col] = values.map(_as_level).where(values.notna(), np.nan)
    return out


def _event_masks(df: pd.DataFrame, cfg: DataConfig):
    times = pd.to_numeric(df[cfg.time_column], errors="coerce").astype(float)
    status = df[cfg.status_column].astype("string").str.strip().str.upper()

    event_labels = {s.upper() for s in cfg.event_statuses}
    censored_labels = {s.upper() for s in cfg.censored_statuses}
    is_event = status.isin(event_labels).fillna(False).to_numpy(dtype=bool)
    is_censored = status.isin(censored_labels).fillna(False).to_numpy(dtype=bool)

    time_values = times.to_numpy()
    bad_time = ~np.isfinite(time_values) | (np.nan_to_num(time_values, nan=-1.0) < 0)
    bad_status = ~(is_event | is_censored)

    return time_values, is_event, bad_time, bad_status


def to_structured_y(event, time) -> np.ndarray:
    """Create a scikit-survival structured array.

    Args:
        event: Event indicators (truthy = resolved)
        time: Durations

    Returns:
        Structured numpy array with dtype=[('event', bool), ('time', float)]

    Example:
        >>> y = to_structured_y([True, False], [12, 30])
        >>> y.dtype.names
        ('event', 'time')
    """
    event = np.asarray(event).astype(bool)
    time = np.asarray(time).astype(float)
    y = np.array(list(zip(event, time)), dtype=[("event", bool), ("time", float)])
    return y


def encode_events(df: pd.DataFrame, data_config: Optional[DataConfig] = None) -> np.ndarray:
    """Encode (elapsed days, status) pairs as time-to-event observations.

    A complaint whose status is in ``event_statuses`` has event=True; one
    whose status is in ``censored_statuses`` is right-censored at its
    elapsed days. Status labels are compared case-insensitively after
    stripping whitespace.

    Args:
        df: Complaint records with the configured time and status columns
        data_config: Column names and status mapping. Defaults to DataConfig()

    Returns:
        Structured array with dtype=[('event', bool), ('time', float)]

    Raises:
        ValueError: If any row has a missing, non-numeric or negative duration
            or a status that maps to neither outcome

    Example:
        >>> df = pd.DataFrame({"days_to_disposition": [3, 40], "status": ["CLOSED", "ACTIVE"]})
        >>> encode_events(df)["event"]
        array([ True, False])
    """
    cfg = data_config or DataConfig()
    missing = [c for c in (cfg.time_column, cfg.status_column) if c not in df.columns]
    if missing:
        raise ValueError(f"Input data missing required columns: {missing}")

    times, is_event, bad_time, bad_status = _event_masks(df, cfg)

    problems = []
    if bad_time.any():
        problems.append(f"{int(bad_time.sum())} rows with missing or negative {cfg.time_column}")
    if bad_status.any():
        unknown = sorted(df.loc[bad_status, cfg.status_column].astype(str).unique())[:5]
        problems.append(f"{int(bad_status.sum())} rows with unmapped {cfg.status_column} {unknown}")
    if problems:
        raise ValueError("Malformed complaint records: " + "; ".join(problems))

    return to_structured_y(is_event, times)


def clean_complaints(df: pd.DataFrame, data_config: Optional[DataConfig] = None) -> pd.DataFrame:
    """Drop malformed records and normalize categorical columns.

    Rows rejected by :func:`encode_events` are removed with a logged
    warning, so the cleaned frame always encodes without error.

    Args:
        df: Raw complaint records
        data_config: Column layout. Defaults to DataConfig()

    Returns:
        Cleaned copy of df with a fresh RangeIndex

    Raises:
        ValueError: If required columns are missing or no rows survive
    """
    cfg = data_config or DataConfig()
    validate_schema(df, cfg)

    _, _, bad_time, bad_status = _event_masks(df, cfg)
    bad = bad_time | bad_status
    if bad.any():
        logger.warning(
            f"Dropping {int(bad.sum()):,} malformed records "
            f"({int(bad_time.sum())} bad durations, {int(bad_status.sum())} unmapped statuses)"
        )
    out = df.loc[~bad].reset_index(drop=True)
    if out.empty:
        raise ValueError("No valid complaint records remain after cleaning")

    out[cfg.time_column] = pd.to_numeric(out[cfg.time_column]).astype(float)
    for col in cfg.numeric_features:
        out[col] = pd.to_numeric(out[col], errors="coerce").astype(float)
    return normalize_categoricals(out, cfg.categorical_features)


def split_X_y(df: pd.DataFrame, data_config: Optional[DataConfig] = None) -> Tuple[pd.DataFrame, np.ndarray]:
    """Extract predictors and the survival target.

    Args:
        df: Cleaned complaint records
        data_config: Column layout. Defaults to DataConfig()

    Returns:
        Tuple containing:
        - X: DataFrame with numeric then categorical predictor columns
        - y: Structured array with dtype=[('event', bool), ('time', float)]

    Example:
        >>> X, y = split_X_y(clean_complaints(raw))
        >>> X.shape[1]
        9
    """
    cfg = data_config or DataConfig()
    validate_schema(df, cfg)
    y = encode_events(df, cfg)
    X = normalize_categoricals(
        df[list(cfg.numeric_features) + list(cfg.categorical_features)],
        cfg.categorical_features,
    )
    return X, y


@dataclass(frozen=True)
class DataSplit:
    """Positional indices of the training, validation and test subsets.

    Attributes:
        train: Rows used for fitting during tuning
        validation: Rows used to compare configurations and families
        test: Rows scored once with the selected model
    """
    train: np.ndarray
    validation: np.ndarray
    test: np.ndarray

    @property
    def n(self) -> int:
        return len(self.train) + len(self.validation) + len(self.test)

    @property
    def train_validation(self) -> np.ndarray:
        """Rows used for the final refit."""
        return np.sort(np.concatenate([self.train, self.validation]))

    def assignment(self) -> np.ndarray:
        """Label each record with the subset it belongs to.

        Returns:
            Object array of length n with values "train", "validation", "test"
        """
        labels = np.empty(self.n, dtype=object)
        for label, idx in zip(SPLIT_LABELS, (self.train, self.validation, self.test)):
            labels[idx] = label
        return labels

    def summary(self, y: np.ndarray) -> pd.DataFrame:
        """Record counts and resolved share per subset."""
        rows = []
        for label, idx in zip(SPLIT_LABELS, (self.train, self.validation, self.test)):
            events = y["event"][idx]
            rows.append({
                "subset": label,
                "n": len(idx),
                "resolved": int(events.sum()),
                "resolved_share": float(events.mean()) if len(idx) else np.nan,
            })
        return pd.DataFrame(rows)


def _stratify_labels(events: np.ndarray, cfg: SplitConfig, stage: str) -> Optional[np.ndarray]:
    """Event labels for stratification, or None when a class is too small to stratify."""
    if not cfg.stratify_on_event:
        return None
    counts = np.bincount(events, minlength=2)
    if counts.min() < 2:
        logger.warning(
            f"Unstratified {stage} split: {int(counts[1])} resolved and "
            f"{int(counts[0])} open complaints"
        )
        return None
    return events


def split_train_validation_test(y: np.ndarray, split_config: Optional[SplitConfig] = None) -> DataSplit:
    """Partition records into training, validation and test subsets.

    Two seeded ``train_test_split`` calls: the first separates the training
    share, the second divides the remainder between validation and test.
    With ``stratify_on_event`` the resolved share is kept equal across
    subsets.

    Args:
        y: Structured survival array for every record
        split_config: Proportions and seed. Defaults to 60/20/20 with seed 403

    Returns:
        DataSplit with sorted, disjoint and exhaustive index arrays

    Example:
        >>> split = split_train_validation_test(y, SplitConfig(seed=403))
        >>> len(split.train), len(split.validation), len(split.test)
        (600, 200, 200)
    """
    cfg = split_config or SplitConfig()
    idx = np.arange(len(y))
    events = y["event"].astype(int)

    train_idx, holdout_idx = train_test_split(
        idx,
        train_size=cfg.train_prop,
        random_state=cfg.seed,
        shuffle=True,
        stratify=_stratify_labels(events, cfg, "training"),
    )
    validation_share = cfg.validation_prop / (1.0 - cfg.train_prop)
    validation_idx, test_idx = train_test_split(
        holdout_idx,
        train_size=validation_share,
        random_state=cfg.seed,
        shuffle=True,
        stratify=_stratify_labels(events[holdout_idx], cfg, "holdout"),
    )
    return DataSplit(np.sort(train_idx), np.sort(validation_idx), np.sort(test_idx))


# Synthetic snapshot used for sample runs and tests. Effects are on the log
# time scale: negative values mean faster resolution.
_BOROUGHS = {
    "BROOKLYN": (0.32, 40.650, -73.950, 3, 18, 0.10),
    "QUEENS": (0.26, 40.720, -73.820, 4, 14, 0.20),
    "MANHATTAN": (0.22, 40.780, -73.970, 1, 12, -0.20),
    "BRONX": (0.14, 40.845, -73.880, 2, 12, 0.05),
    "STATEN ISLAND": (0.06, 40.580, -74.150, 5, 3, -0.10),
}
_UNITS = {
    "BES": (0.22, 0.20), "CONST": (0.18, 0.40), "EMERG": (0.10, -0.80),
    "HIU": (0.12, 0.00), "INSPECTION": (0.20, -0.20), "SCAFF": (0.08, 0.30),
    "ELEVATOR": (0.07, 0.10), "BOILER": (0.03, 0.50),
}
_CATEGORIES = {
    "05": 0.22, "45": 0.16, "83": 0.12, "73": 0.10, "71": 0.08, "49": 0.07,
    "4A": 0.06, "91": 0.05, "59": 0.04, "23": 0.03, "31": 0.02,
    "6S": 0.015, "1Z": 0.01, "2B": 0.01, "81": 0.005,
}
_PRIORITIES = {"A": (0.05, -0.80), "B": (0.45, 0.00), "C": (0.35, 0.30), "D": (0.10, 0.50), "E": (0.05, 0.60)}
_SPECIAL_DISTRICTS = {
    "None": 0.93, "Special Midtown": 0.025, "Hudson Yards": 0.02,
    "Special Clinton": 0.015, "Coney Island": 0.01,
}


def generate_synthetic_complaints(
    n: int = 2000,
    seed: int = 42,
    snapshot_days: float = 540.0,
    median_days: float = 45.0,
    shape: float = 1.1,
) -> pd.DataFrame:
    """Simulate a snapshot of building complaints.

    Complaints are filed uniformly over the ``snapshot_days`` before the
    snapshot. Resolution times follow a Weibull AFT model driven by
    priority, unit, borough and category; complaints not resolved by the
    snapshot are ACTIVE with their elapsed days, the rest are CLOSED.
    Complaints outside a special district have it missing.
    About 3% of priorities and 1% of coordinates are missing, and several
    categories and special districts fall below a 2% share.

    Args:
        n: Number of complaints
        seed: Seed for numpy's Generator
        snapshot_days: Length of the filing window in days
        median_days: Median resolution time for the reference profile
        shape: Weibull shape of the resolution times

    Returns:
        DataFrame with the building complaints schema

    Example:
        >>> df = generate_synthetic_complaints(n=500, seed=7)
        >>> sorted(df["status"].unique())
        ['ACTIVE', 'CLOSED']
    """
    rng = np.random.default_rng(seed)

    borough_names = list(_BOROUGHS)
    borough = rng.choice(borough_names, size=n, p=[_BOROUGHS[b][0] for b in borough_names])
    lat0 = np.array([_BOROUGHS[b][1] for b in borough])
    lon0 = np.array([_BOROUGHS[b][2] for b in borough])
    latitude = lat0 + rng.normal(0.0, 0.03, size=n)
    longitude = lon0 + rng.normal(0.0, 0.04, size=n)
    board = np.array([
        f"{_BOROUGHS[b][3]}{rng.integers(1, _BOROUGHS[b][4] + 1):02d}" for b in borough
    ])

    unit_names = list(_UNITS)
    unit = rng.choice(unit_names, size=n, p=[_UNITS[u][0] for u in unit_names])

    cat_names = list(_CATEGORIES)
    cat_p = np.array([_CATEGORIES[c] for c in cat_names])
    category = rng.choice(cat_names, size=n, p=cat_p / cat_p.sum())
    category_effect = dict(zip(cat_names, rng.normal(0.0, 0.35, size=len(cat_names))))

    prio_names = list(_PRIORITIES)
    priority = rng.choice(prio_names, size=n, p=[_PRIORITIES[p][0] for p in prio_names])

    district_names = list(_SPECIAL_DISTRICTS)
    district = rng.choice(district_names, size=n, p=[_SPECIAL_DISTRICTS[d] for d in district_names])

    log_scale = (
        np.log(median_days / np.log(2) ** (1.0 / shape))
        + np.array([_PRIORITIES[p][1] for p in priority])
        + np.array([_UNITS[u][1] for u in unit])
        + np.array([_BOROUGHS[b][5] for b in borough])
        + np.array([category_effect[c] for c in category])
    )
    resolution = np.exp(log_scale) * rng.weibull(shape, size=n)

    elapsed = rng.uniform(0.0, snapshot_days, size=n)
    resolved = resolution <= elapsed
    days = np.floor(np.where(resolved, resolution, elapsed)).astype(int)

    snapshot = pd.Timestamp("2023-12-31")
    year_entered = (snapshot - pd.to_timedelta(np.floor(elapsed), unit="D")).year.astype(str)

    priority = priority.astype(object)
    priority[rng.random(n) < 0.03] = np.nan
    district = district.astype(object)
    district[district == "None"] = np.nan
    missing_coords = rng.random(n) < 0.01
    latitude[missing_coords] = np.nan
    longitude[missing_coords] = np.nan

    return pd.DataFrame({
        TIME_COL: days,
        STATUS_COL: np.where(resolved, "CLOSED", "ACTIVE"),
        "year_entered": np.asarray(year_entered, dtype=object),
        "latitude": latitude,
        "longitude": longitude,
        "borough": borough.astype(object),
        "special_district": district,
        "unit": unit.astype(object),
        "community_board": board.astype(object),
        "complaint_category": category.astype(object),
        "complaint_priority": priority,
    })
