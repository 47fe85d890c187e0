"""Translation of search parameters into SQL filter clauses.

Filters only ever touch indexed columns; the JSON document is never
searched. Matching semantics per parameter kind:

- string: case-insensitive substring match
- token: exact match
- reference: exact match on the referenced id ("Patient/123" or "123")
- date: FHIR comparison prefixes (eq, ne, gt, lt, ge, le) with implicit
  ranges for partial dates, so "date=2024-03" covers the whole month
- boolean: "true" / "false"
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import ColumnElement, and_, or_
from sqlalchemy.sql.sqltypes import Date

from fhirstore.errors import InvalidSearchError
from fhirstore.projections.registry import ProjectionConfig, SearchParameter
from fhirstore.utils.fhir_helpers import extract_reference_id, parse_fhir_datetime

_DATE_PREFIXES = ("eq", "ne", "gt", "lt", "ge", "le")
_YEAR = re.compile(r"^\d{4}$")
_YEAR_MONTH = re.compile(r"^\d{4}-\d{2}$")
_DAY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _as_values(raw: Any) -> list[str]:
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, bool):
        return ["true" if raw else "false"]
    if isinstance(raw, Iterable):
        return [str(v) for v in raw]
    return [str(raw)]


def _date_range(value: str) -> tuple[datetime, datetime]:
    """Return the [start, end) interval a FHIR date value denotes."""
    start = parse_fhir_datetime(value)
    if start is None:
        raise InvalidSearchError(f"Invalid date value: '{value}'")
    try:
        if _YEAR.match(value):
            end = start.replace(year=start.year + 1)
        elif _YEAR_MONTH.match(value):
            end = (start.replace(day=28) + timedelta(days=4)).replace(day=1)
        elif _DAY.match(value):
            end = start + timedelta(days=1)
        else:
            end = start + timedelta(microseconds=1)
    except (ValueError, OverflowError):
        raise InvalidSearchError(f"Invalid date value: '{value}' is out of range") from None
    return start, end


def _date_clause(column, value: str) -> ColumnElement[bool]:
    prefix = "eq"
    if value[:2] in _DATE_PREFIXES:
        prefix, value = value[:2], value[2:]
    start, end = _date_range(value)

    lower: date | datetime = start
    upper: date | datetime = end
    if isinstance(column.type, Date):
        lower, upper = start.date(), end.astimezone(timezone.utc).date()
        if upper == lower:
            upper = lower + timedelta(days=1)

    if prefix == "eq":
        return and_(column >= lower, column < upper)
    if prefix == "ne":
        return or_(column < lower, column >= upper)
    if prefix == "gt":
        return column >= upper
    if prefix == "ge":
        return column >= lower
    if prefix == "lt":
        return column < lower
    return column < upper  # le


def _boolean_value(value: str) -> bool:
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise InvalidSearchError(f"Invalid boolean value: '{value}'")


def _clause(column, param: SearchParameter, value: str) -> ColumnElement[bool]:
    if param.kind == "string":
        return column.ilike(f"%{value}%")
    if param.kind == "reference":
        target_id = extract_reference_id(value)
        if target_id is None:
            raise InvalidSearchError(f"Invalid reference value: '{value}'")
        return column == target_id
    if param.kind == "date":
        return _date_clause(column, value)
    if param.kind == "boolean":
        return column == _boolean_value(value)
    return column == value


def build_filter_clauses(
    config: ProjectionConfig,
    filters: Mapping[str, Any] | None,
) -> list[ColumnElement[bool]]:
    """Build WHERE clauses for a set of search filters.

    Repeated values for one parameter are AND-ed (e.g. a date range given
    as ["ge2024-01-01", "lt2024-02-01"]).

    Args:
        config: Projection configuration of the searched type.
        filters: Parameter name (or indexed column name) to value(s).

    Returns:
        List of SQL boolean clauses.

    Raises:
        InvalidSearchError: For unknown parameters or malformed values.
    """
    model = config.model_class
    clauses: list[ColumnElement[bool]] = []
    for name, raw in (filters or {}).items():
        if name == "_id":
            clauses.append(model.id.in_(_parse_ids(_as_values(raw))))
            continue

        param = config.search_parameter(name)
        if param is None:
            raise InvalidSearchError(
                f"Unknown search parameter '{name}' for {config.resource_type.value}"
            )
        column = model.__table__.c[param.column]
        for value in _as_values(raw):
            if value == "":
                raise InvalidSearchError(f"Empty value for search parameter '{name}'")
            clauses.append(_clause(column, param, value))
    return clauses


def _parse_ids(values: list[str]) -> list[uuid.UUID]:
    ids = []
    for value in values:
        try:
            ids.append(uuid.UUID(extract_reference_id(value) or ""))
        except ValueError:
            raise InvalidSearchError(f"Invalid resource id: '{value}'") from None
    return ids
