"""Log line and normalized event models."""

import json
from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class LogLine:
    source: str          # path of the file (or "-" for stdin)
    text: str            # line content, CR/LF stripped


class EventKind(Enum):
    RAW = "raw"
    STRUCTURED = "structured"


@dataclass(frozen=True)
class Event:
    """A normalized payload unit: either an opaque string or a field map."""

    kind: EventKind
    value: object

    @classmethod
    def raw(cls, text: str) -> "Event":
        return cls(EventKind.RAW, text)

    @classmethod
    def structured(cls, fields: dict) -> "Event":
        return cls(EventKind.STRUCTURED, fields)

    @property
    def is_raw(self) -> bool:
        return self.kind is EventKind.RAW

    def to_json(self) -> str:
        """Compact JSON: objects stay objects, raw lines become JSON strings.

        Raises ValueError for NaN or infinite floats, which JSON cannot carry.
        """
        return json.dumps(self.value, separators=(",", ":"), ensure_ascii=False,
                          allow_nan=False, default=str)
