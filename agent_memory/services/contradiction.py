"""
Contradiction detection and supersession of working-memory entries.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from ..models.core import MemoryEntry
from ..utils.logging_config import MemoryEventLog, get_logger
from ..utils.sqlite_client import StorageError
from ..utils.text_similarity import jaccard

logger = get_logger(__name__)

DEFAULT_CONTRADICTION_THRESHOLD = 0.3
SUPERSEDE_REASON = 'Contradicted by newer information'


@dataclass
class ResolutionOutcome:
    inserted: List[MemoryEntry] = field(default_factory=list)
    superseded: List[str] = field(default_factory=list)


class ContradictionResolver:
    """Supersedes older same-type entries that a new entry contradicts.

    Two entries of the same type contradict when their word-set Jaccard
    similarity exceeds the threshold and their texts differ. The new entry is
    stored and indexed whether or not anything was superseded.
    """

    def __init__(self,
                 storage,
                 search_index,
                 threshold: float = DEFAULT_CONTRADICTION_THRESHOLD,
                 events: Optional[MemoryEventLog] = None):
        self.storage = storage
        self.search_index = search_index
        self.threshold = threshold
        self.events = events or MemoryEventLog(logger)

    def find_contradiction(self, entry: MemoryEntry, existing: List[MemoryEntry]) -> Optional[MemoryEntry]:
        for candidate in existing:
            if candidate.type != entry.type or candidate.id == entry.id:
                continue
            if candidate.content != entry.content and jaccard(entry.content, candidate.content) > self.threshold:
                return candidate
        return None

    def apply(self, entries: List[MemoryEntry], existing: List[MemoryEntry]) -> ResolutionOutcome:
        """
        Resolve and store newly extracted entries.

        Args:
            entries: New entries from one extraction run
            existing: The agent's active entries before this run

        Returns:
            Stored entries and ids of superseded entries
        """
        outcome = ResolutionOutcome()
        active = list(existing)

        for entry in entries:
            contradiction = self.find_contradiction(entry, active)
            if contradiction is not None:
                try:
                    self.storage.supersede(contradiction.id, by=entry.id, reason=SUPERSEDE_REASON)
                    active.remove(contradiction)
                    outcome.superseded.append(contradiction.id)
                    self.search_index.remove_document(contradiction.id)
                    self.events.info('entry_superseded',
                                     'Superseded contradicted entry',
                                     entry_id=contradiction.id,
                                     superseded_by=entry.id,
                                     reason=SUPERSEDE_REASON)
                except StorageError as e:
                    self.events.error('storage_failed',
                                      'Failed to supersede entry',
                                      operation='supersede',
                                      entry_id=contradiction.id,
                                      error=str(e))

            try:
                self.storage.insert_memory_entry(entry)
            except StorageError as e:
                self.events.error('storage_failed',
                                  'Failed to insert entry',
                                  operation='insert_memory_entry',
                                  entry_id=entry.id,
                                  error=str(e))
                continue

            outcome.inserted.append(entry)
            self.search_index.index_memory_entry(entry)
            self.events.info('entry_stored', f'Stored entry: [{entry.type.value}] "{entry.content[:80]}"', entry_id=entry.id)

        return outcome
