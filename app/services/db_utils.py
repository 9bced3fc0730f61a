from typing import Any

from sqlalchemy import cast, func
from sqlalchemy.dialects.postgresql import JSONB


def jsonb_merge(column, values: dict[str, Any]):
    """SQL expression merging ``values`` into a JSONB column without overwriting other keys."""
    return func.coalesce(column, cast({}, JSONB)).op("||")(cast(values, JSONB))
