"""
Single-flight processing gate.

At most one purchase order is resolved end-to-end at a time. The gate owns the
process-wide ProcessingStatus; only try_acquire / update / release mutate it.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from app.core.errors import GateBusyError, LockMisuseError
from app.models.processing import ProcessingStatus

logger = logging.getLogger(__name__)

_STATUS_FIELDS = frozenset(ProcessingStatus.model_fields) - {"is_processing"}


class ProcessingGate:
    def __init__(self) -> None:
        self._status = ProcessingStatus()

    @property
    def is_held(self) -> bool:
        return self._status.is_processing

    def try_acquire(self, **initial: Any) -> bool:
        # No await between the check and the set: atomic under the event loop.
        if self._status.is_processing:
            logger.info("Processing gate busy (step=%s), not acquiring", self._status.current_step)
            return False
        fields = self._validate(initial)
        self._status = self._merge({**fields, "is_processing": True})
        logger.info("Processing gate acquired: %s", self._describe())
        return True

    def update(self, **partial: Any) -> None:
        if not self._status.is_processing:
            raise LockMisuseError("Processing status update attempted without holding the gate")
        fields = self._validate(partial)
        self._status = self._merge(fields)
        logger.debug("Processing status: %s", self._describe())

    def release(self, **final: Any) -> None:
        fields = {"current_step": "idle", "current_email": "", "current_po": ""}
        fields.update(self._validate(final))
        fields.update({"is_processing": False, "item_index": 0, "item_total": 0})
        self._status = self._merge(fields)
        logger.info("Processing gate released")

    def get_status(self) -> ProcessingStatus:
        return self._status.model_copy(deep=True)

    @asynccontextmanager
    async def held(self, **initial: Any) -> AsyncIterator["ProcessingGate"]:
        if not self.try_acquire(**initial):
            raise GateBusyError("Another purchase order is being processed")
        try:
            yield self
        finally:
            self.release()

    def _validate(self, fields: dict) -> dict:
        unknown = set(fields) - _STATUS_FIELDS
        if unknown:
            raise ValueError(f"Unknown processing status fields: {sorted(unknown)}")
        return fields

    def _merge(self, fields: dict) -> ProcessingStatus:
        # ValidationError leaves the current status in place
        return ProcessingStatus.model_validate({**self._status.model_dump(), **fields})

    def _describe(self) -> str:
        s = self._status
        progress = f" item {s.item_index}/{s.item_total}" if s.item_total else ""
        email = f" ({s.current_email})" if s.current_email else ""
        return f"{s.current_step or 'idle'}{email}{progress}"


_gate: Optional[ProcessingGate] = None


def get_processing_gate() -> ProcessingGate:
    """Process-wide gate instance, created on first use."""
    global _gate
    if _gate is None:
        _gate = ProcessingGate()
    return _gate
