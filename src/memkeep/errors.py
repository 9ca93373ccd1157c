"""Error taxonomy for the memory store."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from memkeep.memory.models import Memory


class MemkeepError(Exception):
    """Base class for all memory store errors."""


class ValidationError(MemkeepError):
    """Required fields missing or malformed on write."""


class DuplicateError(MemkeepError):
    """A near-identical memory was recorded within the dedup window."""

    def __init__(self, existing: Memory) -> None:
        self.existing = existing
        super().__init__(
            f"A similar memory already exists ({existing.id}, created "
            f"{existing.created.isoformat(timespec='seconds')}): {existing.summary}"
        )


class NotFound(MemkeepError):
    """Operation referenced a memory id the store does not have."""

    def __init__(self, memory_id: str) -> None:
        self.memory_id = memory_id
        super().__init__(f"Memory {memory_id} not found")


class StorageError(MemkeepError):
    """I/O failure reading or writing a record, the index or the stats file."""


class InconsistentIndexError(MemkeepError):
    """The index references ids that have no record file."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Index references {len(missing)} missing record(s): {missing[:5]}")
