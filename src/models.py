"""Data models for the reconciliation core."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
from enum import Enum


# A single cell value as handed over by the spreadsheet loaders.
Cell = Union[str, int, float, None]

# Default absolute tolerance for the amount proximity mode.
PROXIMITY_TOLERANCE = 1000.0


class Side(Enum):
    """Which of the two reconciled files a record came from."""
    LEFT = "left"
    RIGHT = "right"

    @property
    def id_prefix(self) -> str:
        """Prefix for synthetic record ids (act report vs insurance export)."""
        return "act" if self is Side.LEFT else "ins"


class MatchMode(Enum):
    """Matching strategy for a reconciliation run."""
    KEY = "key"
    PROXIMITY = "proximity"


class ArithmeticCheck(Enum):
    """Which derived-value check an arithmetic issue failed."""
    COMMISSION = "commission"
    NET = "net"


class MissingColumnError(ValueError):
    """A configured column does not exist in the rows of one side."""

    def __init__(self, column: str, side: Side):
        self.column = column
        self.side = side
        super().__init__(
            f"Column '{column}' not found in {side.value} rows"
        )


@dataclass(frozen=True, eq=False)
class Record:
    """
    One parsed row.

    Records compare by identity: two rows with identical cells are still
    two different records.
    """
    id: str
    cells: Mapping[str, Cell] = field(default_factory=dict)

    def get(self, column: str) -> Cell:
        return self.cells.get(column)

    @property
    def columns(self) -> List[str]:
        return list(self.cells.keys())

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, **self.cells}


def make_records(rows: Iterable[Mapping[str, Cell]], side: Side) -> List[Record]:
    """Wrap raw rows into records with ids like ``act_0`` / ``ins_0``."""
    return [
        Record(id=f"{side.id_prefix}_{index}", cells=dict(row))
        for index, row in enumerate(rows)
    ]


@dataclass
class ReconConfig:
    """Configuration for a reconciliation run."""
    # Amount columns may be left out when the engine detects them from headers
    amount_col_left: Optional[str] = None
    amount_col_right: Optional[str] = None
    # Key columns are only optional in proximity mode
    key_col_left: Optional[str] = None
    key_col_right: Optional[str] = None
    mode: MatchMode = MatchMode.KEY
    amount_tolerance: float = PROXIMITY_TOLERANCE

    def __post_init__(self):
        if isinstance(self.mode, str):
            self.mode = MatchMode(self.mode)
        if self.mode is MatchMode.KEY and not (self.key_col_left and self.key_col_right):
            raise ValueError("Key columns for both sides are required in key mode")
        if self.amount_tolerance < 0:
            raise ValueError("Amount tolerance must not be negative")

    @property
    def has_keys(self) -> bool:
        return bool(self.key_col_left and self.key_col_right)


@dataclass(frozen=True)
class MatchedPair:
    """A left record confirmed against a right record."""
    left: Record
    right: Record
    confidence: float
    reason: str
    amount_difference: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "left": self.left.to_dict(),
            "right": self.right.to_dict(),
            "confidence": self.confidence,
            "reason": self.reason,
            "amount_difference": self.amount_difference,
        }


@dataclass(frozen=True)
class DuplicateGroup:
    """Two or more records sharing one key on the same side."""
    side: Side
    key: str
    records: List[Record]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "side": self.side.value,
            "key": self.key,
            "rows": [r.to_dict() for r in self.records],
        }


@dataclass
class UnmatchedRecords:
    left: List[Record] = field(default_factory=list)
    right: List[Record] = field(default_factory=list)


@dataclass
class ReconSummary:
    """Summary counts for reconciliation results."""
    total_matched: int = 0
    total_unmatched: int = 0
    match_percentage: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_matched": self.total_matched,
            "total_unmatched": self.total_unmatched,
            "match_percentage": self.match_percentage,
        }


@dataclass
class ReconResult:
    """Container for all reconciliation outputs."""
    config: ReconConfig
    summary: ReconSummary
    matched: List[MatchedPair] = field(default_factory=list)
    unmatched: UnmatchedRecords = field(default_factory=UnmatchedRecords)
    duplicates: List[DuplicateGroup] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.config.mode.value,
            "matched": [pair.to_dict() for pair in self.matched],
            "unmatched": {
                "left": [r.to_dict() for r in self.unmatched.left],
                "right": [r.to_dict() for r in self.unmatched.right],
            },
            "duplicates": [group.to_dict() for group in self.duplicates],
            "summary": self.summary.to_dict(),
        }


@dataclass(frozen=True)
class ArithmeticIssue:
    """A row that breaks the commission / net relationship."""
    record: Record
    check: ArithmeticCheck
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row": self.record.to_dict(),
            "check": self.check.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ReviewCase:
    """A result pattern worth a manual look."""
    case: str
    description: str
    priority: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case": self.case,
            "description": self.description,
            "priority": self.priority,
        }
