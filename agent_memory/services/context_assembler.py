"""
Builds the memory context block injected ahead of an agent's system prompt.
"""

from typing import List, Optional

from ..utils.config import MemoryConfig
from ..utils.logging_config import MemoryEventLog, get_logger
from ..utils.neptune_client import NeptuneError
from ..utils.sqlite_client import StorageError
from ..utils.token_budget import take_within_budget

logger = get_logger(__name__)

OVERRIDES_HEADER = '# User Overrides'
PROFILE_HEADER = '# User Profile'
WORKING_MEMORY_HEADER = '# Working Memory'
SUMMARIES_HEADER = '# Recent Conversation Summaries'
RELATIONSHIPS_HEADER = '# Key Relationships'


def render_section(header: str, lines: List[str]) -> str:
    return '\n'.join([header, *lines])


class ContextAssembler:
    """Composes overrides, profile, working memory, summaries and relationships.

    Overrides and the profile are never trimmed. The other sections are cut to
    their token budgets, keeping a prefix of their source order.
    """

    def __init__(self, storage, graph_store=None, config: Optional[MemoryConfig] = None,
                 events: Optional[MemoryEventLog] = None):
        self.storage = storage
        self.graph_store = graph_store if graph_store is not None else storage
        self.config = config or MemoryConfig()
        self.events = events or MemoryEventLog(logger)

    def assemble_context(self, agent_id: str, config: Optional[MemoryConfig] = None) -> str:
        """
        Assemble the context block for one agent.

        Args:
            agent_id: Agent whose working memory and summaries are included
            config: Overrides the assembler's configuration for this call

        Returns:
            Sections separated by blank lines, or '' when nothing applies
        """
        config = config or self.config
        if not config.enabled:
            return ''

        sections = []
        for build in (self._overrides, self._profile, lambda: self._working_memory(agent_id, config),
                      lambda: self._summaries(agent_id, config), lambda: self._relationships(config)):
            try:
                section = build()
            except (StorageError, NeptuneError) as e:
                self.events.error('storage_failed', 'Failed to load context section', operation='assemble', error=str(e))
                continue
            if section:
                sections.append(section)
        return '\n\n'.join(sections)

    def _overrides(self) -> Optional[str]:
        edits = self.storage.load_user_edits()
        if not edits:
            return None
        return render_section(OVERRIDES_HEADER, [f'- {edit.content}' for edit in edits])

    def _profile(self) -> Optional[str]:
        profile = self.storage.load_user_profile()
        if profile is None or not profile.content:
            return None
        return render_section(PROFILE_HEADER, [profile.content])

    def _working_memory(self, agent_id: str, config: MemoryConfig) -> Optional[str]:
        entries = self.storage.load_active_entries(agent_id)
        lines = take_within_budget(WORKING_MEMORY_HEADER,
                                   [f'- [{entry.type.display_name}] {entry.content}' for entry in entries],
                                   config.working_memory_budget_tokens)
        if not lines:
            return None
        self.storage.touch_entries([entry.id for entry in entries[:len(lines)]])
        return render_section(WORKING_MEMORY_HEADER, lines)

    def _summaries(self, agent_id: str, config: MemoryConfig) -> Optional[str]:
        summaries = self.storage.load_summaries(agent_id=agent_id, days=config.summary_retention_days)
        lines = take_within_budget(SUMMARIES_HEADER,
                                   [f'- {summary.conversation_at}: {summary.summary}' for summary in summaries],
                                   config.summary_budget_tokens)
        return render_section(SUMMARIES_HEADER, lines) if lines else None

    def _relationships(self, config: MemoryConfig) -> Optional[str]:
        relationships = self.graph_store.load_recent_relationships(limit=config.graph_context_limit)
        lines = take_within_budget(RELATIONSHIPS_HEADER, [f'- {rel.describe()}' for rel in relationships],
                                   config.graph_budget_tokens)
        return render_section(RELATIONSHIPS_HEADER, lines) if lines else None
