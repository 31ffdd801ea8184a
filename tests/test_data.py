"""Unit tests for complaint_survival.data module.

Tests loading, event encoding, cleaning, splitting and the synthetic
complaint generator.
"""
import logging
import pytest
import numpy as np
import pandas as pd
from complaint_survival.config import DataConfig, SplitConfig
from complaint_survival.data import (
    CAT_COLS,
    NUM_COLS,
    STATUS_COL,
    TIME_COL,
    clean_complaints,
    encode_events,
    generate_synthetic_complaints,
    load_data,
    normalize_categoricals,
    split_X_y,
    split_train_validation_test,
    to_structured_y,
)


def _records(days, status):
    return pd.DataFrame({TIME_COL: days, STATUS_COL: status})


class TestToStructuredY:
    """Tests for to_structured_y function."""

    def test_basic_conversion(self):
        """Test conversion of event flags and times to a structured array."""
        y = to_structured_y([1, 0, 1], [12, 24, 6])

        assert y.dtype.names == ("event", "time")
        assert y["event"].dtype == bool
        assert y["time"].dtype == np.float64
        assert y["event"].tolist() == [True, False, True]
        assert y["time"][1] == 24.0


class TestEncodeEvents:
    """Tests for encode_events function."""

    def test_closed_is_event_active_is_censored(self):
        """Resolved complaints have event=True, open ones event=False."""
        y = encode_events(_records([3, 40, 0], ["CLOSED", "ACTIVE", "CLOSED"]))

        assert y["event"].tolist() == [True, False, True]
        assert y["time"].tolist() == [3.0, 40.0, 0.0]

    def test_status_is_case_and_whitespace_insensitive(self):
        """Status labels are stripped and upper-cased before mapping."""
        y = encode_events(_records([1, 2], [" closed", "Active "]))

        assert y["event"].tolist() == [True, False]

    def test_custom_status_mapping(self):
        """Additional labels can be mapped through DataConfig."""
        cfg = DataConfig(event_statuses=("CLOSED", "RESOLVED"), censored_statuses=("ACTIVE", "OPEN"))
        y = encode_events(_records([1, 2, 3], ["RESOLVED", "OPEN", "CLOSED"]), cfg)

        assert y["event"].tolist() == [True, False, True]

    def test_event_flag_matches_status_on_synthetic_data(self, complaints):
        """Every CLOSED record is an event and every other record is censored."""
        y = encode_events(complaints)

        np.testing.assert_array_equal(y["event"], (complaints[STATUS_COL] == "CLOSED").to_numpy())

    @pytest.mark.parametrize("days,status", [
        ([-1, 3], ["CLOSED", "CLOSED"]),
        ([np.nan, 3], ["CLOSED", "ACTIVE"]),
        (["abc", 3], ["CLOSED", "ACTIVE"]),
        ([1, 3], ["CLOSED", "PENDING"]),
        ([1, 3], ["CLOSED", None]),
    ])
    def test_malformed_rows_raise(self, days, status):
        """Negative, missing or non-numeric durations and unmapped statuses are rejected."""
        with pytest.raises(ValueError, match="Malformed complaint records"):
            encode_events(_records(days, status))

    def test_missing_columns_raise(self):
        """A frame without the status column is rejected."""
        with pytest.raises(ValueError, match="missing required columns"):
            encode_events(pd.DataFrame({TIME_COL: [1, 2]}))


class TestCleanComplaints:
    """Tests for clean_complaints function."""

    def test_drops_malformed_rows_with_warning(self, complaints, caplog):
        """Malformed records are removed and reported."""
        raw = complaints.head(20).copy()
        raw.loc[0, TIME_COL] = -5
        raw.loc[1, STATUS_COL] = "UNKNOWN"

        with caplog.at_level(logging.WARNING, logger="complaint_survival.data"):
            clean = clean_complaints(raw)

        assert len(clean) == 18
        assert clean.index.equals(pd.RangeIndex(18))
        assert "Dropping 2 malformed records" in caplog.text
        encode_events(clean)  # no longer raises

    def test_categoricals_become_strings(self, complaints):
        """Categorical columns hold strings or NaN after cleaning."""
        raw = complaints.head(10).copy()
        raw["complaint_category"] = [5] * 10
        clean = clean_complaints(raw)

        assert clean["complaint_category"].tolist() == ["5"] * 10

    def test_missing_schema_column_raises(self, complaints):
        """All configured columns must be present."""
        with pytest.raises(ValueError, match="borough"):
            clean_complaints(complaints.drop(columns="borough"))

    def test_no_valid_rows_raises(self):
        """A frame with only malformed rows cannot be cleaned."""
        raw = generate_synthetic_complaints(n=5, seed=1)
        raw[STATUS_COL] = "PENDING"
        with pytest.raises(ValueError, match="No valid complaint records"):
            clean_complaints(raw)


class TestNormalizeCategoricals:
    """Tests for normalize_categoricals function."""

    def test_mixed_values(self):
        """Numbers become strings and missing values stay missing."""
        out = normalize_categoricals(pd.DataFrame({"c": [5, None, "4A"]}), ["c"])

        assert out["c"][0] == "5"
        assert pd.isna(out["c"][1])
        assert out["c"][2] == "4A"

    def test_input_not_modified(self):
        """The original frame is left unchanged."""
        df = pd.DataFrame({"c": [1, 2]})
        normalize_categoricals(df, ["c"])

        assert df["c"].tolist() == [1, 2]

    def test_integral_floats_match_integers(self):
        """A float code from a column with gaps is the same level as the integer code."""
        out = normalize_categoricals(pd.DataFrame({"c": [301.0, 2.5, np.nan]}), ["c"])

        assert out["c"].tolist()[:2] == ["301", "2.5"]
        assert pd.isna(out["c"][2])

    def test_csv_codes_with_and_without_gaps(self, tmp_path):
        """Codes agree between a CSV with missing values and one without."""
        pd.DataFrame({"community_board": [301, 301, None, 205]}).to_csv(tmp_path / "train.csv", index=False)
        pd.DataFrame({"community_board": [301, 205]}).to_csv(tmp_path / "new.csv", index=False)

        train = normalize_categoricals(load_data(str(tmp_path / "train.csv")), ["community_board"])
        new = normalize_categoricals(load_data(str(tmp_path / "new.csv")), ["community_board"])

        assert set(new["community_board"]) <= set(train["community_board"].dropna())
        assert set(new["community_board"]) == {"301", "205"}


class TestSplitXY:
    """Tests for split_X_y function."""

    def test_feature_columns(self, clean_data):
        """Predictors are the numeric then categorical columns."""
        _, X, y = clean_data

        assert list(X.columns) == NUM_COLS + CAT_COLS
        assert len(X) == len(y)
        assert TIME_COL not in X.columns


class TestLoadData:
    """Tests for load_data function."""

    def test_csv(self, complaints, tmp_path):
        """CSV files are read with one row per complaint."""
        path = tmp_path / "complaints.csv"
        complaints.head(50).to_csv(path, index=False)

        df = load_data(str(path))

        assert df.shape == (50, complaints.shape[1])

    def test_parquet(self, complaints, tmp_path):
        """Parquet files are supported."""
        path = tmp_path / "complaints.parquet"
        complaints.head(50).to_parquet(path, index=False)

        df = load_data(str(path))

        assert len(df) == 50
        assert set(df.columns) == set(complaints.columns)

    def test_pickle(self, complaints, tmp_path):
        """Pickle files are supported."""
        path = tmp_path / "complaints.pkl"
        complaints.head(10).to_pickle(path)

        pd.testing.assert_frame_equal(load_data(str(path)), complaints.head(10))

    def test_missing_file(self, tmp_path):
        """A missing local file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_data(str(tmp_path / "nope.csv"))

    def test_unsupported_format(self, tmp_path):
        """Unknown extensions raise ValueError."""
        path = tmp_path / "complaints.xlsx"
        path.write_text("x")
        with pytest.raises(ValueError, match="Unsupported file format"):
            load_data(str(path))


class TestSplitTrainValidationTest:
    """Tests for split_train_validation_test function."""

    def test_partition(self, clean_data, data_split):
        """Every record is in exactly one subset."""
        _, _, y = clean_data
        all_idx = np.concatenate([data_split.train, data_split.validation, data_split.test])

        assert len(all_idx) == len(y)
        assert len(np.unique(all_idx)) == len(y)
        assert set(np.intersect1d(data_split.train, data_split.validation)) == set()
        assert set(np.intersect1d(data_split.train, data_split.test)) == set()
        assert set(np.intersect1d(data_split.validation, data_split.test)) == set()

    def test_assignment_labels(self, data_split):
        """assignment() labels every record with its subset."""
        labels = data_split.assignment()

        assert (labels[data_split.train] == "train").all()
        assert (labels[data_split.validation] == "validation").all()
        assert (labels[data_split.test] == "test").all()
        assert set(labels) == {"train", "validation", "test"}

    def test_proportions(self, clean_data, data_split):
        """Default split is 60/20/20."""
        _, _, y = clean_data
        n = len(y)

        assert abs(len(data_split.train) - 0.6 * n) <= 1
        assert abs(len(data_split.validation) - 0.2 * n) <= 1
        assert abs(len(data_split.test) - 0.2 * n) <= 1

    def test_reproducible_with_same_seed(self, clean_data):
        """The same seed gives the same split."""
        _, _, y = clean_data
        a = split_train_validation_test(y, SplitConfig(seed=403))
        b = split_train_validation_test(y, SplitConfig(seed=403))

        np.testing.assert_array_equal(a.train, b.train)
        np.testing.assert_array_equal(a.validation, b.validation)
        np.testing.assert_array_equal(a.test, b.test)

    def test_different_seed_changes_split(self, clean_data):
        """A different seed gives a different split."""
        _, _, y = clean_data
        a = split_train_validation_test(y, SplitConfig(seed=403))
        b = split_train_validation_test(y, SplitConfig(seed=7))

        assert not np.array_equal(a.train, b.train)

    @pytest.mark.parametrize("n_open", [1, 3])
    def test_rare_event_class_falls_back(self, n_open, caplog):
        """With too few open complaints to stratify, the split still partitions the records."""
        event = np.ones(100, dtype=bool)
        event[:n_open] = False
        y = to_structured_y(event, np.arange(100, dtype=float))

        with caplog.at_level(logging.WARNING, logger="complaint_survival"):
            split = split_train_validation_test(y)

        all_idx = np.concatenate([split.train, split.validation, split.test])
        assert sorted(all_idx) == list(range(100))
        assert (len(split.train), len(split.validation), len(split.test)) == (60, 20, 20)
        assert "Unstratified" in caplog.text

    def test_all_resolved(self):
        """A snapshot with no open complaints splits without error."""
        y = to_structured_y(np.ones(50, dtype=bool), np.arange(50, dtype=float))
        split = split_train_validation_test(y)

        assert len(split.train) + len(split.validation) + len(split.test) == 50

    def test_stratified_on_event(self, clean_data, data_split):
        """Resolved share is nearly equal across subsets."""
        _, _, y = clean_data
        shares = data_split.summary(y)["resolved_share"]

        assert shares.max() - shares.min() < 0.02

    def test_train_validation_union(self, data_split):
        """train_validation is the sorted union used for the final refit."""
        union = data_split.train_validation

        assert len(union) == len(data_split.train) + len(data_split.validation)
        assert np.all(np.diff(union) > 0)

    def test_invalid_proportions(self):
        """Proportions that leave no test subset are rejected."""
        with pytest.raises(ValueError):
            SplitConfig(train_prop=0.7, validation_prop=0.3)


class TestGenerateSyntheticComplaints:
    """Tests for generate_synthetic_complaints function."""

    def test_schema(self, complaints):
        """The synthetic snapshot has the complaint schema."""
        expected = {TIME_COL, STATUS_COL, *NUM_COLS, *CAT_COLS}

        assert set(complaints.columns) == expected
        assert len(complaints) == 1200

    def test_values(self, complaints):
        """Durations are non-negative integers and statuses are CLOSED/ACTIVE."""
        assert (complaints[TIME_COL] >= 0).all()
        assert set(complaints[STATUS_COL]) == {"CLOSED", "ACTIVE"}
        assert 0.5 < (complaints[STATUS_COL] == "CLOSED").mean() < 0.99

    def test_missing_and_rare_levels(self, complaints):
        """Some priorities are missing and some categories are rare."""
        shares = complaints["complaint_category"].value_counts(normalize=True)

        assert complaints["complaint_priority"].isna().any()
        assert (shares < 0.02).any()

    def test_reproducible(self):
        """The same seed gives the same snapshot."""
        pd.testing.assert_frame_equal(
            generate_synthetic_complaints(n=200, seed=3),
            generate_synthetic_complaints(n=200, seed=3),
        )
