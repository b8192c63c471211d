"""Remote job statuses and their mapping onto poller states."""

from __future__ import annotations

import enum
from typing import Any

from watsonx_stream.polling import JobState


class _Status(enum.Enum):
    @classmethod
    def from_value(cls, value: str | None):
        """Case-insensitive lookup; unknown values raise ``ValueError``."""
        for member in cls:
            if value is not None and member.value == value.lower():
                return member
        raise ValueError(f"Unknown {cls.__name__} value: {value}")

    @property
    def state(self) -> JobState:
        if self.value == "completed":
            return JobState.SUCCEEDED
        if self.value == "failed":
            return JobState.FAILED
        return JobState.PENDING


class BatchStatus(_Status):
    VALIDATING = "validating"
    IN_PROGRESS = "in_progress"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExtractionStatus(_Status):
    SUBMITTED = "submitted"
    UPLOADING = "uploading"
    RUNNING = "running"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Batch jobs
# ---------------------------------------------------------------------------

def batch_status(batch: dict[str, Any]) -> BatchStatus:
    return BatchStatus.from_value(batch.get("status"))


def classify_batch(batch: dict[str, Any]) -> JobState:
    return batch_status(batch).state


def describe_batch_failure(batch: dict[str, Any]) -> tuple[str | None, str | None]:
    errors = (batch.get("errors") or {}).get("data") or []
    if not errors:
        return None, f"batch {batch.get('id')} reported status failed"
    first = errors[0]
    messages = "; ".join(e.get("message", "") for e in errors if e.get("message"))
    return first.get("code"), messages or None


# ---------------------------------------------------------------------------
# Text extraction
# ---------------------------------------------------------------------------

def _extraction_results(extraction: dict[str, Any]) -> dict[str, Any]:
    return (extraction.get("entity") or {}).get("results") or {}


def extraction_id(extraction: dict[str, Any]) -> str | None:
    return (extraction.get("metadata") or {}).get("id")


def extraction_status(extraction: dict[str, Any]) -> ExtractionStatus:
    return ExtractionStatus.from_value(_extraction_results(extraction).get("status"))


def classify_extraction(extraction: dict[str, Any]) -> JobState:
    return extraction_status(extraction).state


def describe_extraction_failure(
    extraction: dict[str, Any],
) -> tuple[str | None, str | None]:
    error = _extraction_results(extraction).get("error") or {}
    return error.get("code"), error.get("message")
