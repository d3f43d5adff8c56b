"""
Column names and schema validation for the fishnet tables.

Every stage output is keyed by `uniqueID`: a dense, 1-based integer that is
assigned once by the fishnet builder and never reassigned. Schemas are
validated on write so drift fails the stage that caused it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

import geopandas as gpd
import pandas as pd


# =============================================================================
# Canonical column names
# =============================================================================

CELL_ID = "uniqueID"
TARGET_COUNT = "countWeapons"
TEST_COUNT = "countWeapons_test"
NEIGHBORHOOD = "name"
RANDOM_FOLD = "cvID"
LOCAL_I = "localI"
P_VALUE = "p_value"
IS_SIG = "is_sig"
IS_SIG_NN = "is_sig.nn"
PREDICTION = "Prediction"
NN_SUFFIX = ".nn"


def nn_column(factor: str) -> str:
    """Name of the nearest-neighbor distance column for a risk factor."""
    return f"{factor}{NN_SUFFIX}"


# =============================================================================
# Schema Definition
# =============================================================================

@dataclass
class ColumnSpec:
    """Specification for a single column."""
    name: str
    dtype: Optional[str] = None  # "int", "float", "geometry"
    nullable: bool = True
    unique: bool = False
    allowed_values: Optional[Set[Any]] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None


@dataclass
class Schema:
    """Schema specification for a DataFrame or GeoDataFrame."""
    name: str
    columns: List[ColumnSpec]
    required_columns: List[str] = field(default_factory=list)
    min_rows: int = 0

    def __post_init__(self):
        if not self.required_columns:
            self.required_columns = [c.name for c in self.columns if not c.nullable]


class SchemaError(Exception):
    """Raised when schema validation fails."""
    pass


FISHNET_SCHEMA = Schema(
    name="fishnet",
    columns=[
        ColumnSpec(CELL_ID, dtype="int", nullable=False, unique=True, min_value=1),
        ColumnSpec("geometry", dtype="geometry", nullable=False),
    ],
    min_rows=1,
)

FEATURES_SCHEMA = Schema(
    name="fishnet_features",
    columns=[
        ColumnSpec(CELL_ID, dtype="int", nullable=False, unique=True, min_value=1),
        ColumnSpec(TARGET_COUNT, dtype="int", nullable=False, min_value=0),
        ColumnSpec(RANDOM_FOLD, dtype="int", nullable=False, min_value=1),
        ColumnSpec("geometry", dtype="geometry", nullable=False),
    ],
    min_rows=1,
)

SPATIAL_FEATURES_SCHEMA = Schema(
    name="fishnet_spatial_features",
    columns=FEATURES_SCHEMA.columns + [
        ColumnSpec(IS_SIG, dtype="int", nullable=False, allowed_values={0, 1}),
        ColumnSpec(P_VALUE, dtype="float", nullable=True, min_value=0, max_value=1),
        ColumnSpec(IS_SIG_NN, dtype="float", nullable=False, min_value=0),
    ],
    min_rows=1,
)

CV_RESULTS_SCHEMA = Schema(
    name="cv_results",
    columns=[
        ColumnSpec(CELL_ID, dtype="int", nullable=False),
        ColumnSpec(PREDICTION, dtype="float", nullable=False, min_value=0),
        ColumnSpec("Regression", nullable=False),
    ],
    min_rows=1,
)


# =============================================================================
# Validation Functions
# =============================================================================

def validate_column(df: pd.DataFrame, spec: ColumnSpec) -> List[str]:
    """
    Validate a single column against its specification.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    col_name = spec.name

    if spec.dtype == "geometry":
        if not isinstance(df, gpd.GeoDataFrame):
            errors.append(f"Expected GeoDataFrame for geometry column {col_name}")
        elif df.geometry.isna().any() and not spec.nullable:
            errors.append(f"Column {col_name}: null geometries not allowed")
        return errors

    if col_name not in df.columns:
        errors.append(f"Missing column: {col_name}")
        return errors

    col = df[col_name]

    if spec.dtype == "int" and not pd.api.types.is_integer_dtype(col):
        errors.append(f"Column {col_name}: expected integer, got {col.dtype}")
    elif spec.dtype == "float" and not pd.api.types.is_numeric_dtype(col):
        errors.append(f"Column {col_name}: expected numeric, got {col.dtype}")

    if not spec.nullable and col.isna().any():
        errors.append(f"Column {col_name}: {int(col.isna().sum())} NA values not allowed")

    if spec.unique and col.duplicated().any():
        errors.append(f"Column {col_name}: {int(col.duplicated().sum())} duplicate values not allowed")

    if spec.allowed_values is not None:
        invalid = ~col.isin(spec.allowed_values) & col.notna()
        if invalid.any():
            errors.append(f"Column {col_name}: invalid values {list(col[invalid].unique()[:5])}")

    if spec.min_value is not None and ((col < spec.min_value) & col.notna()).any():
        errors.append(f"Column {col_name}: values below min {spec.min_value}")

    if spec.max_value is not None and ((col > spec.max_value) & col.notna()).any():
        errors.append(f"Column {col_name}: values above max {spec.max_value}")

    return errors


def validate_schema(
    df: Union[pd.DataFrame, gpd.GeoDataFrame],
    schema: Schema,
    context: str = "",
    raise_on_error: bool = True,
) -> List[str]:
    """
    Validate a DataFrame against a schema.

    Raises:
        SchemaError: If raise_on_error=True and validation fails
    """
    errors = []
    ctx = f" ({context})" if context else ""

    if len(df) < schema.min_rows:
        errors.append(f"Expected at least {schema.min_rows} rows, got {len(df)}{ctx}")

    for col_spec in schema.columns:
        errors.extend(validate_column(df, col_spec))

    if errors and raise_on_error:
        raise SchemaError(f"Schema validation failed for '{schema.name}':\n" + "\n".join(errors))

    return errors


def validate_cell_ids(df: pd.DataFrame, context: str = "") -> None:
    """
    Check that `uniqueID` is the dense sequence 1..n with no duplicates.

    Raises:
        SchemaError: On a missing, duplicated or gapped id column
    """
    if CELL_ID not in df.columns:
        raise SchemaError(f"Missing {CELL_ID} column ({context})")

    ids = df[CELL_ID]
    if ids.isna().any() or ids.duplicated().any():
        raise SchemaError(f"{CELL_ID} has nulls or duplicates ({context})")

    expected = set(range(1, len(df) + 1))
    if set(ids.astype(int)) != expected:
        raise SchemaError(f"{CELL_ID} is not the dense sequence 1..{len(df)} ({context})")


def validate_merge(
    left: pd.DataFrame,
    right: pd.DataFrame,
    on: Union[str, List[str]] = CELL_ID,
    how: str = "left",
    validate: str = "one_to_one",
    context: str = "",
) -> pd.DataFrame:
    """
    Merge with pandas' key validation so duplicated ids fail loudly.

    Raises:
        SchemaError: If merge validation fails
    """
    try:
        return left.merge(right, on=on, how=how, validate=validate)
    except pd.errors.MergeError as e:
        raise SchemaError(f"Merge validation failed ({context}): {e}") from e


SCHEMAS: Dict[str, Schema] = {
    s.name: s
    for s in (FISHNET_SCHEMA, FEATURES_SCHEMA, SPATIAL_FEATURES_SCHEMA, CV_RESULTS_SCHEMA)
}


def get_schema(name: str) -> Schema:
    """Get a registered schema by name."""
    if name not in SCHEMAS:
        raise KeyError(f"Unknown schema: {name}. Available: {list(SCHEMAS.keys())}")
    return SCHEMAS[name]
