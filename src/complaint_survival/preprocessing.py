"""Feature-engineering recipes for complaint records.

Three recipes are available, each a scikit-learn ``ColumnTransformer``
that learns its statistics from the data it is fitted on and applies them
unchanged to any later data:

- ``"other"``: unknown marking, rare-level collapsing, dummy encoding
- ``"unknown"``: unknown marking, one-hot encoding
- ``"dummies"``: unknown marking, rare-level collapsing, dummy encoding,
  normalization
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional
import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.compose import ColumnTransformer
from sklearn.feature_selection import VarianceThreshold
from sklearn.impute import SimpleImputer
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder, StandardScaler

from complaint_survival.data import NUM_COLS, CAT_COLS

RECIPES = ("other", "unknown", "dummies")


class RareCategoryGrouper(BaseEstimator, TransformerMixin):
    """Collapse infrequent and unseen levels into a single level.

    For each column, levels whose share of the fitting data is below
    ``threshold`` map to ``other_level``. Levels that never occurred during
    fit (novel levels) map to ``other_level`` as well.

    Args:
        threshold: Minimum share in (0, 1) for a level to be kept (inclusive)
        other_level: Replacement label

    Example:
        >>> g = RareCategoryGrouper(threshold=0.25).fit(pd.DataFrame({"c": list("aaaab")}))
        >>> g.transform(pd.DataFrame({"c": ["a", "b", "z"]}))["c"].tolist()
        ['a', 'other', 'other']
    """

    def __init__(self, threshold: float = 0.02, other_level: str = "other"):
        self.threshold = threshold
        self.other_level = other_level

    def fit(self, X, y=None):
        X = pd.DataFrame(X)
        self.columns_: List[Any] = list(X.columns)
        self.n_features_in_ = len(self.columns_)
        self.level_maps_: Dict[Any, Dict[Any, Any]] = {}
        n = len(X)
        for col in self.columns_:
            vc = X[col].value_counts(dropna=False)
            keep = set(vc[vc / n >= self.threshold].index.tolist())
            self.level_maps_[col] = {
                level: (level if level in keep else self.other_level) for level in vc.index
            }
        return self

    def transform(self, X):
        is_frame = isinstance(X, pd.DataFrame)
        X = pd.DataFrame(X).copy()
        if X.shape[1] != self.n_features_in_:
            raise ValueError(
                f"RareCategoryGrouper fitted on {self.n_features_in_} columns, got {X.shape[1]}"
            )
        X.columns = self.columns_
        for col in self.columns_:
            m = self.level_maps_[col]
            X[col] = X[col].map(lambda v: m.get(v, self.other_level))
        return X if is_frame else X.to_numpy(dtype=object)

    def get_feature_names_out(self, input_features=None):
        if input_features is not None:
            return np.asarray(input_features, dtype=object)
        return np.asarray([str(c) for c in self.columns_], dtype=object)


def make_preprocessor(
    recipe: str = "dummies",
    numeric: Optional[List[str]] = None,
    categorical: Optional[List[str]] = None,
    rare_threshold: float = 0.02,
    unknown_level: str = "unknown",
    other_level: str = "other",
) -> ColumnTransformer:
    """Create the preprocessing step for one recipe.

    Args:
        recipe: One of "other", "unknown", "dummies"
        numeric: Numeric column names. Defaults to NUM_COLS if None
        categorical: Categorical column names. Defaults to CAT_COLS if None
        rare_threshold: Training share below which a level collapses
        unknown_level: Level inserted for missing categorical values
        other_level: Level used for rare and novel values

    Returns:
        ColumnTransformer with a numeric branch ("num") and a categorical
        branch ("cat"):
        - "other": median imputation | unknown marking -> rare collapsing ->
          dummy encoding (first level dropped)
        - "unknown": median imputation | unknown marking -> one-hot encoding
        - "dummies": median imputation + scaling | unknown marking -> rare
          collapsing -> dummy encoding -> scaling

    Raises:
        ValueError: If recipe is not recognized

    Example:
        >>> pre = make_preprocessor("dummies")
        >>> Xt = pre.fit_transform(X_train)
        >>> Xv = pre.transform(X_validation)

    Notes:
        - Levels never seen in fitting encode as "other" (collapsing recipes)
          or as all-zero columns ("unknown" recipe)
        - Missing numeric values get an indicator column when present in
          the fitting data
    """
    if recipe not in RECIPES:
        raise ValueError(f"Unknown recipe '{recipe}'. Choose from {RECIPES}")

    numeric = list(numeric) if numeric is not None else list(NUM_COLS)
    categorical = list(categorical) if categorical is not None else list(CAT_COLS)
    scale = recipe == "dummies"

    num_steps = [("impute", SimpleImputer(strategy="median", add_indicator=True))]
    if scale:
        num_steps.append(("scaler", StandardScaler()))

    cat_steps = [("unknown", SimpleImputer(strategy="constant", fill_value=unknown_level))]
    if recipe in ("other", "dummies"):
        cat_steps.append(("rare", RareCategoryGrouper(threshold=rare_threshold, other_level=other_level)))
        cat_steps.append(
            ("onehot", OneHotEncoder(handle_unknown="ignore", sparse_output=False, drop="first"))
        )
    else:
        cat_steps.append(("onehot", OneHotEncoder(handle_unknown="ignore", sparse_output=False)))
    if scale:
        cat_steps.append(("scaler", StandardScaler()))

    return ColumnTransformer(
        transformers=[
            ("num", Pipeline(steps=num_steps), numeric),
            ("cat", Pipeline(steps=cat_steps), categorical),
        ],
        remainder="drop",
        sparse_threshold=0.0,
    )


def make_pipeline(preprocessor: ColumnTransformer, estimator) -> Pipeline:
    """Combine a recipe and a survival model.

    Steps:
    1. 'pre': the recipe
    2. 'varth': drops zero-variance columns (single-level categoricals,
       levels absent after collapsing)
    3. 'model': the survival model

    Example:
        >>> pipe = make_pipeline(make_preprocessor("dummies"), CoxnetWrapper(penalty=0.01))
        >>> pipe.fit(X_train, y_train)
    """
    return Pipeline(
        steps=[
            ("pre", preprocessor),
            ("varth", VarianceThreshold(threshold=1e-12)),
            ("model", estimator),
        ]
    )


def transform_features(pipeline: Pipeline, X) -> np.ndarray:
    """Apply every fitted step of a pipeline except the model."""
    return pipeline[:-1].transform(X)
