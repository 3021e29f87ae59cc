"""Result of one export job attempt, as seen by the queue wrapper."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class OutcomeKind(str, enum.Enum):
    COMPLETED = "completed"
    # Nothing to do: record missing, already running, or already finished
    SKIPPED = "skipped"
    # Attempt failed and the record has budget for another one
    RETRYABLE = "retryable"
    # Attempt failed and must not be retried
    FATAL = "fatal"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    detail: str | None = None

    @classmethod
    def completed(cls, detail: str | None = None) -> Outcome:
        return cls(OutcomeKind.COMPLETED, detail)

    @classmethod
    def skipped(cls, detail: str) -> Outcome:
        return cls(OutcomeKind.SKIPPED, detail)

    @classmethod
    def retryable(cls, detail: str) -> Outcome:
        return cls(OutcomeKind.RETRYABLE, detail)

    @classmethod
    def fatal(cls, detail: str) -> Outcome:
        return cls(OutcomeKind.FATAL, detail)

    def as_dict(self) -> dict:
        return {"outcome": self.kind.value, "detail": self.detail}
