"""Outcome values for core operations that must never raise to their callers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    CALLER_MISUSE = "caller_misuse"
    PERSISTENCE = "persistence"
    INTEGRATION = "integration"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Result:
    ok: bool
    value: Any = None
    kind: Optional[ErrorKind] = None
    message: str = ""
    # Benign no-ops (duplicate start, update after completion) are ok results
    # that still carry a note for debug logging.
    note: str = ""

    @classmethod
    def success(cls, value: Any = None, note: str = "") -> "Result":
        return cls(ok=True, value=value, note=note)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Result":
        return cls(ok=False, kind=kind, message=message)

    def log(self, logger: logging.Logger, context: str) -> "Result":
        """Log this result at the public boundary and return it unchanged."""
        if not self.ok:
            logger.warning("%s failed (%s): %s", context, self.kind.value, self.message)
        elif self.note:
            logger.debug("%s: %s", context, self.note)
        return self
