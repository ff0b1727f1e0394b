"""Conversation history: an append-only tuple of TurnRecords.

Records are never reordered. Only three operations touch existing records:

  patch_image:          the image job for a record resolves (once)
  attach_feedback:      pending feedback is consumed onto its user record (once)
  rollback_failed_turn: the trailing failed user turn and its error marker are
                         removed before a retry
"""

from __future__ import annotations

import logging

from rapport.models import Feedback, TurnRecord

logger = logging.getLogger(__name__)

History = tuple[TurnRecord, ...]


class HistoryError(RuntimeError):
    """Raised when a history operation targets a record in the wrong shape."""


def append(history: History, *records: TurnRecord) -> History:
    return history + records


def find(history: History, record_id: str) -> TurnRecord | None:
    for record in history:
        if record.id == record_id:
            return record
    return None


def _replace(history: History, record_id: str, **changes) -> History:
    for i, record in enumerate(history):
        if record.id == record_id:
            updated = record.model_copy(update=changes)
            return history[:i] + (updated,) + history[i + 1:]
    raise HistoryError(f"No record with id {record_id!r}")


def patch_image(
    history: History, record_id: str, image: str | None, prompt: str | None = None
) -> History:
    """Resolve the image of a record that has an outstanding image job."""
    record = find(history, record_id)
    if record is None:
        raise HistoryError(f"No record with id {record_id!r}")
    if not record.image_pending:
        raise HistoryError(f"Record {record_id!r} has no pending image")
    logger.debug("image patch record=%s has_image=%s", record_id, image is not None)
    return _replace(
        history, record_id, image=image, image_prompt=prompt, image_pending=False
    )


def attach_feedback(history: History, record_id: str, feedback: Feedback) -> History:
    record = find(history, record_id)
    if record is None:
        raise HistoryError(f"No record with id {record_id!r}")
    if record.feedback is not None:
        raise HistoryError(f"Record {record_id!r} already carries feedback")
    return _replace(history, record_id, feedback=feedback)


def rollback_failed_turn(history: History) -> tuple[History, TurnRecord]:
    """Remove the trailing ``{user, error marker}`` pair.

    Falls back to removing the marker alone when the record before it is not
    the failed user dialogue. Returns the trimmed history and the marker.
    """
    if not history or not history[-1].retryable:
        raise HistoryError("History does not end with a retryable error marker")
    marker = history[-1]
    if len(history) >= 2 and history[-2].role == "user":
        return history[:-2], marker
    logger.warning("Retry marker %s not preceded by a user record", marker.id)
    return history[:-1], marker


def last_ai_pose(history: History) -> str | None:
    for record in reversed(history):
        if record.role == "ai":
            return record.body_language or None
    return None
