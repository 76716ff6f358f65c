"""Result value types shared by the database and remote API connections."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class QueryResult:
    """Standardized result of one statement or API call.

    Rows are dictionaries keyed by the column (or JSON field) name exactly as
    the backend returned it.
    """
    rows: List[Dict[str, Any]]
    columns: List[str] = field(default_factory=list)
    row_count: int = 0
    execution_time: float = 0.0
    source: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.row_count:
            self.row_count = len(self.rows)
        if not self.columns and self.rows:
            self.columns = list(self.rows[0].keys())

    def first(self) -> Optional[Dict[str, Any]]:
        return self.rows[0] if self.rows else None

    def scalar(self, column: Optional[str] = None, default: Any = None) -> Any:
        """Value of ``column`` (or the first column) in the first row."""
        row = self.first()
        if row is None:
            return default
        if column is None:
            return next(iter(row.values()), default)
        return get_field(row, column, default)

    def __len__(self) -> int:
        return len(self.rows)


def get_field(row: Dict[str, Any], name: str, default: Any = None) -> Any:
    """Case-insensitive column lookup (Oracle upper-cases unquoted names)."""
    if name in row:
        return row[name]
    lowered = name.lower()
    for key, value in row.items():
        if key.lower() == lowered:
            return value
    return default
