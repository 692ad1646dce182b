"""
Data Preparation Module
=======================

Transforms the single wide study spreadsheet into tidy, analysis-ready
tables, one per measurement domain:
- Column-range selection (inclusive start/end column names)
- Column-name tokenization (e.g. ``hk_con_rest`` -> metric, condition, timepoint)
- Wide -> long reshaping with one column per metric
- Recoding of short tokens into ordered categorical factors
- Metric stacking into a (metric, Measurement) pair
- Balance checks and persistence of the table bundle

Architecture Note:
    This module uses dictionaries instead of classes for data structures
    to keep the tables picklable and easy to inspect interactively.

    TidyTable is a TypedDict containing:
    - data: pandas DataFrame with tidy long-format data
    - domain: name of the measurement domain
    - id_var: participant identifier column
    - factors: within-subject factor columns, in declared order
    - metrics: measured variables (one column each, or stacked)
    - metric_var, value_var: stacked column names (None when unstacked)
    - schema, sep, source_columns: what is needed to rebuild the wide slice
    - levels: declared (raw, label) pairs per factor column
"""
from __future__ import annotations

from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, TypedDict
import warnings

import numpy as np
import pandas as pd

from .exceptions import SchemaMismatch, UnmappedCategory


DEFAULT_ID_VAR = "Participant"
DEFAULT_VALUE_VAR = "Measurement"
DEFAULT_SEP = "_"
ALPHA = 0.05

# Token roles with special meaning in a column schema
VALUE_ROLE = ".value"
DUMMY_ROLE = "dummy"

LevelTable = List[Tuple[str, str]]


# =============================================================================
# Wide Table Loading
# =============================================================================

def _sniff_separator(path: str) -> str:
    """Pick ';' or ',' from the header line of a delimited file."""
    with open(path, "r", encoding="utf-8-sig") as handle:
        header = handle.readline()
    return ";" if header.count(";") > header.count(",") else ","


def read_wide_table(
    path: str,
    id_col: str = DEFAULT_ID_VAR,
    sep: Optional[str] = None,
    decimal: str = ".",
) -> pd.DataFrame:
    """
    Read the wide study spreadsheet (one row per participant).

    :param path: Path to a semicolon- or comma-delimited text file
    :param id_col: Participant identifier column (read as string)
    :param sep: Field separator (None = sniff from header line)
    :param decimal: Decimal mark used in numeric fields
    :returns: Validated wide DataFrame
    :raises ValueError: If the id column is missing or not unique
    """
    if sep is None:
        sep = _sniff_separator(path)
    df = pd.read_csv(path, sep=sep, decimal=decimal, dtype={id_col: str}, encoding="utf-8-sig")
    df.columns = [str(c).strip() for c in df.columns]
    return validate_wide_table(df, id_col=id_col)


def validate_wide_table(df: pd.DataFrame, id_col: str = DEFAULT_ID_VAR) -> pd.DataFrame:
    """
    Validate the wide table structure.

    :param df: Wide DataFrame
    :param id_col: Participant identifier column
    :returns: The same DataFrame
    :raises ValueError: If the id column is missing, has missing or duplicated IDs
    """
    if id_col not in df.columns:
        raise ValueError(f"ID column '{id_col}' not found in data. "
                         f"Available columns: {list(df.columns)[:10]}...")
    if df[id_col].isna().any():
        raise ValueError(f"ID column '{id_col}' has {int(df[id_col].isna().sum())} missing values")
    duplicated = df.loc[df[id_col].duplicated(), id_col].tolist()
    if duplicated:
        raise ValueError(f"Participant IDs are not unique: {duplicated}")
    return df


def column_range(df: pd.DataFrame, start: str, end: str) -> List[str]:
    """
    Return the column names from ``start`` to ``end`` inclusive.

    :raises ValueError: If either bound is missing or ``end`` precedes ``start``
    """
    columns = list(df.columns)
    for bound in (start, end):
        if bound not in columns:
            raise ValueError(f"Column '{bound}' not found in data")
    i, j = columns.index(start), columns.index(end)
    if j < i:
        raise ValueError(f"Column range is reversed: '{start}' comes after '{end}'")
    return columns[i:j + 1]


# =============================================================================
# Column-Schema Reshaper
# =============================================================================

def _validate_schema(schema: Sequence[str]) -> None:
    if list(schema).count(VALUE_ROLE) != 1:
        raise ValueError(f"Schema must contain exactly one '{VALUE_ROLE}' role: {list(schema)}")
    key_roles = [r for r in schema if r not in (VALUE_ROLE, DUMMY_ROLE)]
    if len(set(key_roles)) != len(key_roles):
        raise ValueError(f"Schema roles must be unique: {list(schema)}")


def split_column_name(column: str, schema: Sequence[str], sep: str = DEFAULT_SEP) -> List[str]:
    """
    Split a column name into tokens, enforcing the schema arity.

    :param column: Column name, e.g. "hk_con_rest"
    :param schema: Ordered token roles, e.g. [".value", "condition", "timepoint"]
    :param sep: Token separator
    :returns: List of tokens (same length as schema)
    :raises SchemaMismatch: If the token count differs from the schema length
    """
    tokens = str(column).split(sep)
    if len(tokens) != len(schema) or any(t == "" for t in tokens):
        raise SchemaMismatch(column, expected=len(schema), actual=len(tokens))
    return tokens


def _key_roles(schema: Sequence[str]) -> List[str]:
    """Roles that identify a row (everything but the value and dummy roles)."""
    return [r for r in schema if r not in (VALUE_ROLE, DUMMY_ROLE)]


def reshape_wide_to_long(
    wide: pd.DataFrame,
    id_col: str,
    start: str,
    end: str,
    schema: Sequence[str],
    sep: str = DEFAULT_SEP,
    factor_names: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    """
    Reshape a wide column range into long format, one column per metric.

    Every column in the range is split into tokens by ``sep``; the token in the
    ``.value`` position names the output column that receives the cell value,
    tokens in ``dummy`` positions are parsed and dropped, and all other tokens
    become row identifiers.

    Rows are ordered by participant (wide-table order), then by the order in
    which token combinations first appear in the column range.

    :param wide: Wide DataFrame (one row per participant)
    :param id_col: Participant identifier column
    :param start: First column of the range (inclusive)
    :param end: Last column of the range (inclusive)
    :param schema: Ordered token roles
    :param sep: Token separator
    :param factor_names: Output column name per key role (default: role.title())
    :returns: Long DataFrame with raw (un-recoded) tokens
    :raises SchemaMismatch: If any column in the range breaks the schema arity,
        or two columns collide once dummy tokens are dropped

    Example:
        >>> long = reshape_wide_to_long(
        ...     wide, "Participant", "hk_con_rest", "nadph_ecc_24h",
        ...     schema=[".value", "condition", "timepoint"],
        ... )
    """
    _validate_schema(schema)
    factor_names = factor_names or {}
    key_roles = _key_roles(schema)
    key_cols = [factor_names.get(r, r.title()) for r in key_roles]
    value_pos = list(schema).index(VALUE_ROLE)
    key_pos = [i for i, r in enumerate(schema) if r in key_roles]

    columns = [c for c in column_range(wide, start, end) if c != id_col]

    # Tokenize everything before touching the data (fail fast)
    rows = []
    seen: Dict[Tuple[str, ...], str] = {}
    for col in columns:
        tokens = split_column_name(col, schema, sep)
        key = tuple(tokens[i] for i in key_pos) + (tokens[value_pos],)
        if key in seen:
            raise SchemaMismatch(
                col, expected=len(schema), actual=len(tokens),
                detail=f"collides with '{seen[key]}' once dummy tokens are dropped",
            )
        seen[key] = col
        rows.append([col, tokens[value_pos]] + [tokens[i] for i in key_pos])

    token_frame = pd.DataFrame(rows, columns=["_column", "_metric"] + key_cols).set_index("_column")

    long = wide[[id_col] + columns].melt(id_vars=id_col, var_name="_column", value_name="_value")
    long = long.join(token_frame, on="_column")

    # First-encounter order of participants, row keys and metrics
    participant_order = {pid: i for i, pid in enumerate(wide[id_col])}
    combo_order: Dict[Tuple[str, ...], int] = {}
    for key in token_frame[key_cols].itertuples(index=False, name=None):
        combo_order.setdefault(key, len(combo_order))
    metrics = list(dict.fromkeys(token_frame["_metric"]))

    index_cols = [id_col] + key_cols
    tidy = (
        long.set_index(index_cols + ["_metric"])["_value"]
        .unstack("_metric")
        .reset_index()
    )
    tidy.columns.name = None
    tidy = tidy[index_cols + metrics]

    sort_key = pd.DataFrame({
        "_p": tidy[id_col].map(participant_order),
        "_k": [combo_order[k] for k in tidy[key_cols].itertuples(index=False, name=None)]
              if key_cols else 0,
    })
    tidy = tidy.loc[sort_key.sort_values(["_p", "_k"], kind="stable").index]
    tidy = tidy.reset_index(drop=True).infer_objects()
    return tidy


# =============================================================================
# Categorical Recoder
# =============================================================================

def recode_factor(
    values: pd.Series,
    levels: Sequence[Tuple[Any, str]],
) -> pd.Series:
    """
    Map raw tokens to ordered categorical labels.

    The category order is the declared order, never alphabetical and never
    the order of appearance. Missing values stay missing. Declared levels that
    do not occur are kept as (empty) categories.

    :param values: Series of raw tokens
    :param levels: Ordered (raw, label) pairs
    :returns: Ordered categorical Series with the same index and name
    :raises UnmappedCategory: If a non-missing token has no declared level
    """
    mapping = {str(raw): label for raw, label in levels}
    labels = list(dict.fromkeys(label for _, label in levels))

    raw = values.astype("object")
    present = raw.notna()
    unmapped = sorted({str(v) for v in raw[present] if str(v) not in mapping})
    if unmapped:
        raise UnmappedCategory(str(values.name), unmapped, [raw for raw, _ in levels])

    mapped = raw.where(~present, raw[present].astype(str).map(mapping))
    return pd.Series(
        pd.Categorical(mapped, categories=labels, ordered=True),
        index=values.index,
        name=values.name,
    )


def recode_factors(df: pd.DataFrame, levels: Mapping[str, Sequence[Tuple[Any, str]]]) -> pd.DataFrame:
    """
    Recode several columns at once.

    :param df: DataFrame with raw token columns
    :param levels: Column name -> ordered (raw, label) pairs
    :returns: Copy of df with recoded categorical columns
    """
    df = df.copy()
    for col, col_levels in levels.items():
        if col not in df.columns:
            raise ValueError(f"Cannot recode '{col}': column not found")
        df[col] = recode_factor(df[col], col_levels)
    return df


def _decode_factor(values: pd.Series, levels: Sequence[Tuple[Any, str]]) -> pd.Series:
    """Inverse of recode_factor (label -> raw token)."""
    inverse = {label: str(raw) for raw, label in levels}
    return values.astype("object").map(inverse)


# =============================================================================
# Metric-Stacking Reshaper
# =============================================================================

def stack_metrics(
    df: pd.DataFrame,
    id_vars: Sequence[str],
    metrics: Sequence[str],
    metric_var: str = "Metric",
    value_var: str = DEFAULT_VALUE_VAR,
) -> pd.DataFrame:
    """
    Collapse metric columns into a (metric, value) pair.

    The output has exactly ``len(df) * len(metrics)`` rows; the metric column
    is an ordered categorical in the order the metrics were given.

    :param df: Tidy DataFrame with one column per metric
    :param id_vars: Columns held fixed (participant and factors)
    :param metrics: Metric columns to stack
    :param metric_var: Name of the new metric-name column
    :param value_var: Name of the new value column
    :returns: Stacked DataFrame
    """
    missing = [m for m in metrics if m not in df.columns]
    if missing:
        raise ValueError(f"Metric columns not found: {missing}")

    stacked = df.melt(
        id_vars=list(id_vars),
        value_vars=list(metrics),
        var_name=metric_var,
        value_name=value_var,
    )
    stacked[metric_var] = pd.Categorical(stacked[metric_var], categories=list(metrics), ordered=True)

    expected = len(df) * len(metrics)
    if len(stacked) != expected:
        raise ValueError(f"Stacking produced {len(stacked)} rows, expected {expected}")
    return stacked


def unstack_metrics(
    df: pd.DataFrame,
    id_vars: Sequence[str],
    metric_var: str,
    value_var: str = DEFAULT_VALUE_VAR,
) -> pd.DataFrame:
    """Inverse of stack_metrics (one column per metric again)."""
    wide = df.pivot(index=list(id_vars), columns=metric_var, values=value_var)
    wide.columns = [str(c) for c in wide.columns]
    wide.columns.name = None
    return wide.reset_index()


# =============================================================================
# TidyTable TypedDict
# =============================================================================

class TidyTable(TypedDict):
    """
    Container for one domain's tidy data with metadata.

    Keys:
        data: Tidy long-format DataFrame
        domain: Measurement domain name (e.g., "enzymes")
        id_var: Participant column (default: "Participant")
        factors: Within-subject factor columns (e.g., ["Condition", "Timepoint"])
        metrics: Measured variable names
        metric_var: Stacked metric-name column (None if unstacked)
        value_var: Stacked value column (None if unstacked)
        schema: Token roles used to split the source columns
        sep: Token separator
        source_columns: Source column names in wide-table order
        levels: Factor column -> declared (raw, label) pairs
    """
    data: pd.DataFrame
    domain: str
    id_var: str
    factors: List[str]
    metrics: List[str]
    metric_var: Optional[str]
    value_var: Optional[str]
    schema: List[str]
    sep: str
    source_columns: List[str]
    levels: Dict[str, LevelTable]


def create_tidy_table(
    data: pd.DataFrame,
    domain: str,
    metrics: List[str],
    id_var: str = DEFAULT_ID_VAR,
    factors: Optional[List[str]] = None,
    metric_var: Optional[str] = None,
    value_var: Optional[str] = None,
    schema: Optional[List[str]] = None,
    sep: str = DEFAULT_SEP,
    source_columns: Optional[List[str]] = None,
    levels: Optional[Dict[str, LevelTable]] = None,
) -> TidyTable:
    """
    Create a TidyTable dictionary with validation.

    :raises ValueError: If required columns are missing
    """
    table: TidyTable = {
        "data": data,
        "domain": domain,
        "id_var": id_var,
        "factors": list(factors or []),
        "metrics": list(metrics),
        "metric_var": metric_var,
        "value_var": value_var,
        "schema": list(schema or []),
        "sep": sep,
        "source_columns": list(source_columns or []),
        "levels": dict(levels or {}),
    }
    return validate_table(table)


def validate_table(table: TidyTable) -> TidyTable:
    """
    Validate the table structure.

    :param table: TidyTable dictionary
    :returns: The same TidyTable
    :raises ValueError: If required columns are missing
    """
    data = table["data"]
    required = [table["id_var"]] + table["factors"]
    if is_stacked(table):
        required += [table["metric_var"], table["value_var"]]
    else:
        required += table["metrics"]
    missing = [c for c in required if c not in data.columns]
    if missing:
        raise ValueError(f"Table '{table['domain']}' is missing columns: {missing}")
    return table


def is_stacked(table: TidyTable) -> bool:
    """True if metrics are stacked into (metric_var, value_var)."""
    return table["metric_var"] is not None


def stack_table(
    table: TidyTable,
    metric_var: str = "Metric",
    value_var: str = DEFAULT_VALUE_VAR,
) -> TidyTable:
    """Return a stacked copy of a TidyTable."""
    if is_stacked(table):
        return table
    data = stack_metrics(
        table["data"],
        id_vars=[table["id_var"]] + table["factors"],
        metrics=table["metrics"],
        metric_var=metric_var,
        value_var=value_var,
    )
    new = dict(table)
    new.update({"data": data, "metric_var": metric_var, "value_var": value_var})
    return validate_table(new)  # type: ignore[arg-type]


def unstack_table(table: TidyTable) -> TidyTable:
    """Return an unstacked copy of a TidyTable (one column per metric)."""
    if not is_stacked(table):
        return table
    id_vars = [table["id_var"]] + table["factors"]
    data = unstack_metrics(table["data"], id_vars, table["metric_var"], table["value_var"])
    data = data[id_vars + [m for m in table["metrics"] if m in data.columns]]
    # pivot sorts the index; restore participant order of the stacked table
    order = {pid: i for i, pid in enumerate(pd.unique(table["data"][table["id_var"]]))}
    data = data.sort_values(
        by=[table["id_var"]] + table["factors"],
        key=lambda s: s.map(order) if s.name == table["id_var"] else s,
        kind="stable",
    ).reset_index(drop=True)
    new = dict(table)
    new.update({"data": data, "metric_var": None, "value_var": None})
    return validate_table(new)  # type: ignore[arg-type]


def get_n_subjects(table: TidyTable) -> int:
    """Get number of unique participants in the table."""
    return table["data"][table["id_var"]].nunique()


def get_n_observations(table: TidyTable) -> int:
    """Get total number of rows in the table."""
    return len(table["data"])


def subset_table(
    table: TidyTable,
    metrics: Optional[List[str]] = None,
    subjects: Optional[List[str]] = None,
) -> TidyTable:
    """
    Create a subset of the table.

    :param table: TidyTable dictionary
    :param metrics: Subset of metrics
    :param subjects: Subset of participant IDs
    :returns: New TidyTable with filtered data
    """
    df = table["data"].copy()
    new_metrics = list(table["metrics"])

    if subjects is not None:
        df = df[df[table["id_var"]].isin(subjects)].copy()

    if metrics is not None:
        unknown = [m for m in metrics if m not in table["metrics"]]
        if unknown:
            warnings.warn(f"Metrics not found in '{table['domain']}': {unknown}")
        new_metrics = [m for m in table["metrics"] if m in metrics]
        if is_stacked(table):
            df = df[df[table["metric_var"]].isin(new_metrics)].copy()
            df[table["metric_var"]] = df[table["metric_var"]].cat.set_categories(new_metrics)
        else:
            drop = [m for m in table["metrics"] if m not in new_metrics]
            df = df.drop(columns=drop)

    new = dict(table)
    new.update({"data": df.reset_index(drop=True), "metrics": new_metrics})
    return validate_table(new)  # type: ignore[arg-type]


def describe_table(table: TidyTable) -> str:
    """
    Return a summary description of the table.

    :param table: TidyTable dictionary
    :returns: Human-readable summary string
    """
    factor_desc = ", ".join(
        f"{f} ({len(table['levels'].get(f, []))} levels)" for f in table["factors"]
    ) or "none"
    lines = [
        f"TidyTable: {table['domain']}",
        f"  Participants: {get_n_subjects(table)}",
        f"  Rows: {get_n_observations(table)}",
        f"  Factors: {factor_desc}",
        f"  Metrics: {len(table['metrics'])} variables",
        f"  Stacked: {is_stacked(table)}",
    ]
    return "\n".join(lines)


# =============================================================================
# Inverse Reshape
# =============================================================================

def pivot_to_wide(table: TidyTable) -> pd.DataFrame:
    """
    Rebuild the wide column slice a TidyTable was prepared from.

    Labels are mapped back to raw tokens, dummy tokens are restored from the
    recorded source column names, and columns come back in source order.

    :param table: TidyTable produced by prepare_domain (stacked or not)
    :returns: Wide DataFrame: id column followed by the source columns
    """
    if not table["schema"]:
        raise ValueError(f"Table '{table['domain']}' was not reshaped; nothing to pivot")

    table = unstack_table(table)
    schema = table["schema"]
    key_roles = _key_roles(schema)
    key_cols = list(table["factors"])
    if len(key_cols) != len(key_roles):
        raise ValueError("Factor columns do not match schema key roles")
    value_pos = schema.index(VALUE_ROLE)
    key_pos = [i for i, r in enumerate(schema) if r in key_roles]

    raw = table["data"].copy()
    for col in key_cols:
        if col in table["levels"]:
            raw[col] = _decode_factor(raw[col], table["levels"][col])
        else:
            raw[col] = raw[col].astype("object").astype(str)

    id_var = table["id_var"]
    wide = pd.DataFrame({id_var: pd.unique(raw[id_var])})
    for col in table["source_columns"]:
        tokens = split_column_name(col, schema, table["sep"])
        mask = pd.Series(True, index=raw.index)
        for kc, pos in zip(key_cols, key_pos):
            mask &= raw[kc] == tokens[pos]
        values = raw.loc[mask].set_index(id_var)[tokens[value_pos]]
        wide[col] = wide[id_var].map(values)
    return wide


# =============================================================================
# Balance Check
# =============================================================================

BalanceReport = Dict[str, Any]


def check_design_balance(table: TidyTable) -> BalanceReport:
    """
    Compare observed rows with the fully balanced design.

    Expected rows = participants x product(declared factor levels) x metrics.
    A row whose value is missing counts as a missing cell.

    :param table: TidyTable (stacked or not)
    :returns: Dict with expected_rows, observed_rows, complete_rows, balanced
        and a ``missing`` DataFrame listing absent or empty cells
    """
    stacked = stack_table(table) if not is_stacked(table) else table
    df = stacked["data"]
    id_var, metric_var, value_var = stacked["id_var"], stacked["metric_var"], stacked["value_var"]
    factors = stacked["factors"]

    subjects = list(pd.unique(df[id_var]))
    factor_levels = [
        list(df[f].cat.categories) if isinstance(df[f].dtype, pd.CategoricalDtype)
        else list(pd.unique(df[f]))
        for f in factors
    ]
    grid = pd.MultiIndex.from_product(
        [subjects] + factor_levels + [list(stacked["metrics"])],
        names=[id_var] + factors + [metric_var],
    )
    observed = df.dropna(subset=[value_var])
    observed_index = pd.MultiIndex.from_frame(
        observed[[id_var] + factors + [metric_var]].astype("object")
    )
    missing_index = grid.difference(observed_index, sort=False)

    return {
        "domain": stacked["domain"],
        "n_subjects": len(subjects),
        "n_cells": int(np.prod([len(lv) for lv in factor_levels])) if factor_levels else 1,
        "n_metrics": len(stacked["metrics"]),
        "expected_rows": len(grid),
        "observed_rows": len(df),
        "complete_rows": len(observed),
        "balanced": len(missing_index) == 0 and len(df) == len(grid),
        "missing": missing_index.to_frame(index=False),
    }


# =============================================================================
# Domain Preparation
# =============================================================================

def select_columns(
    wide: pd.DataFrame,
    id_col: str,
    start: str,
    end: str,
    levels: Optional[Mapping[str, Sequence[Tuple[Any, str]]]] = None,
) -> pd.DataFrame:
    """
    Select a participant-level column range without reshaping.

    :param wide: Wide DataFrame
    :param id_col: Participant identifier column
    :param start: First column of the range (inclusive)
    :param end: Last column of the range (inclusive)
    :param levels: Optional column -> (raw, label) pairs to recode
    :returns: Copy of the selected columns
    """
    columns = [c for c in column_range(wide, start, end) if c != id_col]
    df = wide[[id_col] + columns].copy().reset_index(drop=True)
    if levels:
        df = recode_factors(df, levels)
    return df


def prepare_domain(
    wide: pd.DataFrame,
    config: Dict[str, Any],
    id_col: str = DEFAULT_ID_VAR,
    stack: bool = True,
    verbose: bool = False,
) -> TidyTable:
    """
    Prepare one domain's tidy table from the wide spreadsheet.

    :param wide: Wide DataFrame (one row per participant)
    :param config: Domain configuration dict with at least ``name``,
        ``start`` and ``end``; reshaped domains also declare ``schema``,
        ``levels`` (role -> (raw, label) pairs), ``factor_names`` and
        ``metric_var``
    :param id_col: Participant identifier column
    :param stack: Stack metrics into (metric_var, Measurement)
    :param verbose: Print a description of the resulting table
    :returns: TidyTable dictionary
    :raises SchemaMismatch: If a column breaks the domain schema
    :raises UnmappedCategory: If a token is not in the declared levels
    """
    name = config["name"]
    schema = config.get("schema")

    if not schema:
        # Participant-level domain: no reshape, no within factors
        df = select_columns(wide, id_col, config["start"], config["end"], config.get("levels"))
        metrics = [
            c for c in df.select_dtypes(include=[np.number]).columns if c != id_col
        ]
        table = create_tidy_table(
            data=df,
            domain=name,
            metrics=metrics,
            id_var=id_col,
            source_columns=[c for c in df.columns if c != id_col],
            levels={k: list(v) for k, v in (config.get("levels") or {}).items()},
        )
        if verbose:
            print(describe_table(table))
        return table

    sep = config.get("sep", DEFAULT_SEP)
    factor_names = config.get("factor_names", {})
    key_roles = _key_roles(schema)
    factors = [factor_names.get(r, r.title()) for r in key_roles]

    long = reshape_wide_to_long(
        wide, id_col, config["start"], config["end"], schema, sep=sep, factor_names=factor_names,
    )

    role_levels = config.get("levels", {})
    levels = {factor_names.get(r, r.title()): list(role_levels[r]) for r in key_roles if r in role_levels}
    undeclared = [f for f in factors if f not in levels]
    if undeclared:
        warnings.warn(f"[{name}] No declared levels for {undeclared}; keeping raw tokens")
    long = recode_factors(long, levels)

    metrics = [c for c in long.columns if c not in [id_col] + factors]
    expected = config.get("expected_metrics")
    if expected is not None and list(expected) != metrics:
        warnings.warn(f"[{name}] Metrics {metrics} differ from expected {list(expected)}")

    # Participant order first, then declared factor order
    order = {pid: i for i, pid in enumerate(wide[id_col])}
    long = long.sort_values(
        by=[id_col] + factors,
        key=lambda s: s.map(order) if s.name == id_col else s,
        kind="stable",
    ).reset_index(drop=True)

    table = create_tidy_table(
        data=long,
        domain=name,
        metrics=metrics,
        id_var=id_col,
        factors=factors,
        schema=list(schema),
        sep=sep,
        source_columns=[c for c in column_range(wide, config["start"], config["end"]) if c != id_col],
        levels=levels,
    )

    if stack:
        table = stack_table(table, metric_var=config.get("metric_var", "Metric"))

    balance = check_design_balance(table)
    if not balance["balanced"]:
        warnings.warn(
            f"[{name}] Unbalanced design: {balance['complete_rows']} complete rows, "
            f"expected {balance['expected_rows']} "
            f"({len(balance['missing'])} missing cells)"
        )

    if verbose:
        print(describe_table(table))
    return table


# =============================================================================
# Table Bundle (hand-off between the two stages)
# =============================================================================

TidyBundle = Mapping[str, TidyTable]


def create_tidy_bundle(tables: Mapping[str, TidyTable]) -> TidyBundle:
    """
    Wrap named tables in a read-only mapping.

    :param tables: Table name -> TidyTable
    :returns: Read-only mapping over a copy of ``tables``
    """
    for name, table in tables.items():
        if table["domain"] != name:
            raise ValueError(f"Bundle key '{name}' does not match table domain '{table['domain']}'")
    return MappingProxyType(dict(tables))


def get_table(bundle: TidyBundle, name: str) -> TidyTable:
    """Look up a table by name."""
    if name not in bundle:
        raise ValueError(f"Unknown table: {name}. Available: {list(bundle.keys())}")
    return bundle[name]


def save_bundle(bundle: TidyBundle, path: str) -> None:
    """
    Persist a bundle of tidy tables as a single pickle file.

    Categorical level order and metadata survive the round trip.
    """
    pd.to_pickle(dict(bundle), path)


def load_bundle(path: str) -> TidyBundle:
    """Load a bundle written by save_bundle."""
    tables = pd.read_pickle(path)
    if not isinstance(tables, dict):
        raise ValueError(f"File '{path}' does not contain a table bundle")
    return create_tidy_bundle({name: validate_table(t) for name, t in tables.items()})
