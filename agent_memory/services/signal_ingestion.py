"""
Signal detection and ingestion for memory extraction triggers.
"""

from typing import List, Optional, Sequence

from ..models.core import PendingSignal, SignalType
from ..utils.logging_config import MemoryEventLog, get_logger
from ..utils.sqlite_client import StorageError

logger = get_logger(__name__)

SIGNAL_PHRASES = [
    (SignalType.EXPLICIT_MEMORY, [
        'remember this', 'remember that', 'remember me', 'remember my', 'please remember', "don't forget", 'do not forget',
        'keep in mind', 'make a note', 'note that'
    ]),
    (SignalType.CORRECTION, [
        'actually,', 'actually ', 'no i meant', 'no, i meant', "that's wrong", 'that is wrong', "that's not right",
        'i was wrong', 'correction:', 'to clarify,'
    ]),
    (SignalType.IDENTITY, [
        'my name is', "i'm called", 'i am called', 'call me', 'i work at', 'i work for', 'my job is', "i'm a ", 'i am a ',
        'i live in', "i'm from", 'i am from', 'my email is', 'my phone is', 'i am ', "i'm ", 'my birthday is',
        "my birthday's", 'i was born', 'my age is'
    ]),
    (SignalType.PREFERENCE, [
        'i prefer', 'i always', 'i never', 'i like to', 'i like ', "i don't like", 'i do not like', 'i hate when',
        'i love when', 'i love ', 'i hate ', 'my favorite', 'my favourite'
    ]),
    (SignalType.DECISION, [
        "let's go with", 'let us go with', 'i decided', "i've decided", 'i have decided', "we'll use", 'we will use',
        'the plan is'
    ]),
    (SignalType.COMMITMENT, [
        'by friday', 'by monday', 'by tuesday', 'by wednesday', 'by thursday', 'by saturday', 'by sunday', 'deadline is',
        'due date is', 'due by', 'by end of', 'by eod', 'by eow'
    ]),
]


def detect_signals(message: str) -> List[SignalType]:
    """Return every signal type whose phrases occur in a user message, in declaration order."""
    lower = (message or '').lower()
    return [signal for signal, phrases in SIGNAL_PHRASES if any(phrase in lower for phrase in phrases)]


def has_signals(message: str) -> bool:
    return bool(detect_signals(message))


class SignalIngestor:
    """Persists one PendingSignal per detected signal type."""

    def __init__(self, storage, events: Optional[MemoryEventLog] = None):
        self.storage = storage
        self.events = events or MemoryEventLog(logger)

    def ingest(self,
               signals: Sequence[SignalType],
               user_message: str,
               assistant_message: Optional[str],
               agent_id: str,
               conversation_id: str) -> List[PendingSignal]:
        """
        Record raw extraction triggers.

        A failure on one signal is logged and does not block the others.

        Returns:
            The signals that were stored
        """
        stored = []
        for signal in signals:
            signal_type = signal.value if isinstance(signal, SignalType) else str(signal)
            pending = PendingSignal(agent_id=agent_id,
                                    conversation_id=conversation_id,
                                    signal_type=signal_type,
                                    user_message=user_message,
                                    assistant_message=assistant_message)
            try:
                self.storage.insert_pending_signal(pending)
                stored.append(pending)
            except StorageError as e:
                self.events.error('storage_failed',
                                  'Failed to insert pending signal',
                                  operation='insert_pending_signal',
                                  agent_id=agent_id,
                                  signal_type=signal_type,
                                  error=str(e))
        return stored
