"""
Profile fact deduplication and versioned user-profile regeneration.
"""

import re
import threading
import time
from typing import List, Optional, Tuple

from ..models.core import ProcessingLog, ProfileEvent, ProfileEventKind, UserProfile
from ..utils.config import MemoryConfig
from ..utils.logging_config import MemoryEventLog, get_logger
from ..utils.model_router import ModelUnavailableError
from ..utils.sqlite_client import StorageError
from ..utils.text_similarity import jaccard
from ..utils.timestamp_utils import elapsed_ms, now_iso
from ..utils.token_budget import estimate_tokens

logger = get_logger(__name__)

PROFILE_SYSTEM_PROMPT = ('You summarize known facts about a user into a short profile. '
                         'Rules: Use ONLY the facts provided. Do NOT invent or assume anything not listed. '
                         'Do NOT use placeholders like [age] or [location]. '
                         'Do NOT add preamble like "Here is" or "Certainly". '
                         'Output the profile text directly, nothing else.')

# Applied in order; each strips at most one leading match
PREAMBLE_PATTERNS = [
    re.compile(r"^(?:certainly|sure|of course|here(?:'s| is| are))[!.,:]?\s*", re.IGNORECASE),
    re.compile(r'^here is (?:a |the )?(?:profile|description|summary)[^:]*:\s*', re.IGNORECASE),
]


def strip_preamble(response: str) -> str:
    text = (response or '').strip()
    for pattern in PREAMBLE_PATTERNS:
        match = pattern.match(text)
        if match:
            text = text[match.end():].strip()
    return text


class ProfileFactDeduper:
    """Stores profile facts as contributions unless they repeat a pending one."""

    def __init__(self, storage, threshold: float = 0.6, events: Optional[MemoryEventLog] = None):
        self.storage = storage
        self.threshold = threshold
        self.events = events or MemoryEventLog(logger)

    def is_duplicate(self, fact: str, pending: List[ProfileEvent]) -> bool:
        return any(jaccard(existing.content, fact) > self.threshold for existing in pending)

    def add_facts(self, facts: List[str], agent_id: str, conversation_id: Optional[str], model: str) -> List[ProfileEvent]:
        """
        Store each non-duplicate fact as a contribution.

        Returns:
            The contributions that were stored
        """
        try:
            pending = self.storage.load_unincorporated_contributions()
        except StorageError as e:
            self.events.error('storage_failed',
                              'Failed to load contributions',
                              operation='load_unincorporated_contributions',
                              error=str(e))
            return []

        stored = []
        for fact in facts:
            fact = (fact or '').strip()
            if not fact:
                continue
            if self.is_duplicate(fact, pending):
                self.events.info('profile_fact_skipped', f'Skipping duplicate profile fact: "{fact[:80]}"', fact=fact)
                continue
            event = ProfileEvent(agent_id=agent_id,
                                 conversation_id=conversation_id,
                                 kind=ProfileEventKind.CONTRIBUTION,
                                 content=fact,
                                 model=model)
            try:
                self.storage.insert_profile_event(event)
            except StorageError as e:
                self.events.error('storage_failed',
                                  'Failed to insert profile fact',
                                  operation='insert_profile_event',
                                  error=str(e))
                continue
            pending.append(event)
            stored.append(event)
            self.events.info('profile_fact_stored', f'Stored profile fact: "{fact[:80]}"', event_id=event.id)
        return stored


class ProfileRegenerator:
    """Recompiles user edits, pending contributions and the current profile into a new version."""

    def __init__(self, storage, model_invoker, config: MemoryConfig, events: Optional[MemoryEventLog] = None):
        self.storage = storage
        self.model_invoker = model_invoker
        self.config = config
        self.events = events or MemoryEventLog(logger)
        self._lock = threading.Lock()

    def threshold(self, has_profile: bool) -> int:
        """Bootstrap with a single contribution; afterwards wait for the configured count."""
        return self.config.profile_regenerate_threshold if has_profile else 1

    def should_regenerate(self) -> bool:
        count = self.storage.contribution_count_since_last_regeneration()
        has_profile = self.storage.load_user_profile() is not None
        threshold = self.threshold(has_profile)
        if count >= threshold:
            self.events.info('profile_regeneration_triggered',
                             'Profile regeneration triggered',
                             contributions=count,
                             threshold=threshold,
                             existing_profile=has_profile)
            return True
        return False

    def maybe_regenerate(self) -> Optional[UserProfile]:
        with self._lock:
            try:
                if not self.should_regenerate():
                    return None
            except StorageError as e:
                self.events.error('storage_failed', 'Failed to check profile threshold', operation='threshold', error=str(e))
                return None
            return self._regenerate()

    def build_prompt(self, current: Optional[UserProfile], contributions: List[ProfileEvent],
                     edits: List[ProfileEvent]) -> Tuple[str, str]:
        facts = [edit.content for edit in edits] + [c.content for c in contributions]

        user = ''
        if current is not None:
            user += f'Current profile:\n{current.content}\n\n'
        user += 'Known facts:\n'
        for fact in facts:
            user += f'- {fact}\n'
        user += (f'\nCombine these facts into a brief profile of at most {self.config.profile_max_tokens} tokens. '
                 'Only state what is listed above.')
        return PROFILE_SYSTEM_PROMPT, user

    def regenerate(self) -> Optional[UserProfile]:
        """
        Produce and save the next profile version.

        Returns:
            The new profile, or None when regeneration failed
        """
        with self._lock:
            return self._regenerate()

    def _regenerate(self) -> Optional[UserProfile]:
        model = self.config.core_model_id
        start = time.monotonic()
        try:
            current = self.storage.load_user_profile()
            contributions = self.storage.load_unincorporated_contributions()
            edits = self.storage.load_user_edits()
            self.events.info('profile_regeneration_started',
                             'Profile regeneration starting',
                             contributions=len(contributions),
                             edits=len(edits),
                             current_version=current.version if current else 0)

            system_prompt, user_prompt = self.build_prompt(current, contributions, edits)
            response = self.model_invoker.generate(user_prompt, system_prompt=system_prompt, model_id=model)
            profile_text = strip_preamble(response)
            version = (current.version if current else 0) + 1

            profile = UserProfile(content=profile_text,
                                  token_count=estimate_tokens(profile_text),
                                  version=version,
                                  model=model,
                                  generated_at=now_iso())
            self.storage.save_user_profile(profile)
        except (ModelUnavailableError, StorageError) as e:
            self.events.error('profile_regeneration_failed', 'Profile regeneration failed', error=str(e))
            self._log('error', model, details=str(e))
            return None
        except Exception as e:
            self.events.error('profile_regeneration_failed', 'Unexpected error during profile regeneration', error=str(e))
            self._log('error', model, details=str(e))
            return None

        try:
            self.storage.mark_contributions_incorporated([c.id for c in contributions], version)
            self.storage.insert_profile_event(
                ProfileEvent(agent_id='system',
                             kind=ProfileEventKind.REGENERATION,
                             content=f'Profile regenerated to v{version}',
                             model=model))
        except StorageError as e:
            self.events.error('storage_failed', 'Failed to record profile incorporation', operation='incorporate', error=str(e))

        duration = elapsed_ms(start)
        self._log('success',
                  model,
                  input_tokens=estimate_tokens(user_prompt),
                  output_tokens=estimate_tokens(response),
                  duration_ms=duration)
        self.events.info('profile_regenerated',
                         f'Profile regenerated to v{version}',
                         version=version,
                         duration_ms=duration,
                         token_count=profile.token_count)
        return profile

    def _log(self, status: str, model: str, **fields) -> None:
        try:
            self.storage.insert_processing_log(
                ProcessingLog(agent_id='system', task_type='profile_regeneration', status=status, model=model, **fields))
        except StorageError as e:
            logger.warning(f'Failed to write processing log: {e}')
