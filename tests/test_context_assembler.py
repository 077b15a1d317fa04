"""
Tests for memory context assembly and per-section token budgets.
"""

from unittest.mock import MagicMock

from agent_memory.models.core import (ConversationSummary, GraphRelationship, MemoryEntry, MemoryEntryType, ProfileEvent,
                                      ProfileEventKind, UserProfile)
from agent_memory.services.context_assembler import (OVERRIDES_HEADER, PROFILE_HEADER, RELATIONSHIPS_HEADER,
                                                     SUMMARIES_HEADER, WORKING_MEMORY_HEADER, ContextAssembler,
                                                     render_section)
from agent_memory.utils.config import MemoryConfig
from agent_memory.utils.sqlite_client import StorageError
from agent_memory.utils.timestamp_utils import seconds_ago_iso


def _entry(content, confidence=0.8, agent_id='agent-1', entry_type=MemoryEntryType.FACT):
    return MemoryEntry(agent_id=agent_id, type=entry_type, content=content, confidence=confidence)


def _populate(storage):
    storage.insert_profile_event(ProfileEvent(agent_id='user', kind=ProfileEventKind.USER_EDIT, content='Call me Sam'))
    storage.save_user_profile(UserProfile(content='Sam is a chef in Lyon.', token_count=5))
    storage.insert_memory_entry(_entry('Prefers metric units', entry_type=MemoryEntryType.PREFERENCE))
    storage.insert_summary(
        ConversationSummary(agent_id='agent-1', conversation_id='conv-1', summary='Discussed menus.', token_count=4))
    sam = storage.resolve_or_create_entity('Sam', 'person')
    lyon = storage.resolve_or_create_entity('Lyon', 'place')
    storage.insert_relationship(GraphRelationship(source_id=sam.id, target_id=lyon.id, relation='lives_in'))


class TestRenderSection:
    def test_header_then_lines(self):
        assert render_section('# H', ['- a', '- b']) == '# H\n- a\n- b'


class TestAssembleContext:
    def test_sections_in_order_separated_by_blank_lines(self, storage):
        _populate(storage)
        context = ContextAssembler(storage).assemble_context('agent-1')

        sections = context.split('\n\n')
        assert [s.split('\n')[0] for s in sections] == [
            OVERRIDES_HEADER, PROFILE_HEADER, WORKING_MEMORY_HEADER, SUMMARIES_HEADER, RELATIONSHIPS_HEADER
        ]
        assert sections[0] == '# User Overrides\n- Call me Sam'
        assert sections[1] == '# User Profile\nSam is a chef in Lyon.'
        assert sections[2] == '# Working Memory\n- [Preference] Prefers metric units'
        assert sections[3].endswith(': Discussed menus.')
        assert sections[4] == '# Key Relationships\n- Sam lives_in Lyon'

    def test_empty_sections_omitted(self, storage):
        storage.insert_memory_entry(_entry('Has a cat'))
        context = ContextAssembler(storage).assemble_context('agent-1')
        assert context == '# Working Memory\n- [Fact] Has a cat'

    def test_nothing_stored_gives_empty_string(self, storage):
        assert ContextAssembler(storage).assemble_context('agent-1') == ''

    def test_disabled_returns_empty_string(self, storage):
        _populate(storage)
        assembler = ContextAssembler(storage, config=MemoryConfig(enabled=False))
        assert assembler.assemble_context('agent-1') == ''

    def test_other_agents_entries_excluded(self, storage):
        storage.insert_memory_entry(_entry('Belongs elsewhere', agent_id='agent-2'))
        assert ContextAssembler(storage).assemble_context('agent-1') == ''


class TestBudgets:
    def test_working_memory_is_budgeted_prefix(self, storage):
        for i in range(10):
            storage.insert_memory_entry(_entry(f'Entry number {i} with some padding text', confidence=0.9 - i * 0.05))
        config = MemoryConfig(working_memory_budget_tokens=30)

        context = ContextAssembler(storage, config=config).assemble_context('agent-1')

        assert len(context) <= 30 * 4
        lines = context.split('\n')[1:]
        expected = [f'- [Fact] Entry number {i} with some padding text' for i in range(10)]
        assert 0 < len(lines) < 10
        assert lines == expected[:len(lines)]

    def test_summaries_are_budgeted_prefix(self, storage):
        for i in range(6):
            storage.insert_summary(
                ConversationSummary(agent_id='agent-1',
                                    conversation_id=f'conv-{i}',
                                    summary=f'Summary number {i} about menus',
                                    token_count=7,
                                    conversation_at=seconds_ago_iso(i * 60)))
        config = MemoryConfig(summary_budget_tokens=40)

        context = ContextAssembler(storage, config=config).assemble_context('agent-1')

        assert context.startswith(SUMMARIES_HEADER)
        assert len(context) <= 40 * 4
        lines = context.split('\n')[1:]
        expected = [f'- {s.conversation_at}: {s.summary}' for s in storage.load_summaries(agent_id='agent-1')]
        assert 0 < len(lines) < 6
        assert lines == expected[:len(lines)]

    def test_relationships_are_budgeted_prefix(self, storage):
        hub = storage.resolve_or_create_entity('Sam', 'person')
        for i in range(5):
            node = storage.resolve_or_create_entity(f'Friend {i}', 'person')
            storage.insert_relationship(GraphRelationship(source_id=hub.id, target_id=node.id, relation='knows'))
        config = MemoryConfig(graph_budget_tokens=16)

        context = ContextAssembler(storage, config=config).assemble_context('agent-1')

        assert context.startswith(RELATIONSHIPS_HEADER)
        assert len(context) <= 16 * 4
        lines = context.split('\n')[1:]
        expected = [f'- {r.describe()}' for r in storage.load_recent_relationships(limit=20)]
        assert 0 < len(lines) < 5
        assert lines == expected[:len(lines)]

    def test_overrides_and_profile_never_trimmed(self, storage):
        long_profile = 'word ' * 3000
        storage.save_user_profile(UserProfile(content=long_profile.strip(), token_count=3000))
        storage.insert_profile_event(ProfileEvent(agent_id='user', kind=ProfileEventKind.USER_EDIT, content='x' * 5000))
        config = MemoryConfig(working_memory_budget_tokens=1, summary_budget_tokens=1, graph_budget_tokens=1)

        context = ContextAssembler(storage, config=config).assemble_context('agent-1')

        assert 'x' * 5000 in context
        assert long_profile.strip() in context

    def test_only_included_entries_are_touched(self, storage):
        first = _entry('Short one', confidence=0.9)
        second = _entry('A much longer entry that will not fit in the tiny budget', confidence=0.5)
        storage.insert_memory_entry(first)
        storage.insert_memory_entry(second)
        config = MemoryConfig(working_memory_budget_tokens=10)

        ContextAssembler(storage, config=config).assemble_context('agent-1')

        assert storage.load_entry(first.id).access_count == 1
        assert storage.load_entry(second.id).access_count == 0

    def test_relationships_limited(self, storage):
        hub = storage.resolve_or_create_entity('Sam', 'person')
        for i in range(5):
            node = storage.resolve_or_create_entity(f'Friend {i}', 'person')
            storage.insert_relationship(GraphRelationship(source_id=hub.id, target_id=node.id, relation='knows'))
        config = MemoryConfig(graph_context_limit=2)

        context = ContextAssembler(storage, config=config).assemble_context('agent-1')
        assert context.count('- Sam knows') == 2


class TestFailures:
    def test_failing_section_is_skipped(self, storage, events):
        storage.insert_memory_entry(_entry('Has a cat'))
        graph = MagicMock()
        graph.load_recent_relationships.side_effect = StorageError('graph down')

        context = ContextAssembler(storage, graph, events=events).assemble_context('agent-1')

        assert context == '# Working Memory\n- [Fact] Has a cat'
        assert events.events('storage_failed')

    def test_per_call_config_overrides_instance_config(self, storage):
        storage.insert_memory_entry(_entry('Has a cat'))
        assembler = ContextAssembler(storage)
        assert assembler.assemble_context('agent-1', MemoryConfig(enabled=False)) == ''
