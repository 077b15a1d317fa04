"""
Tests for the MemoryService entry point.
"""

from unittest.mock import MagicMock

from agent_memory.models.core import (AgentStatus, ConversationChunk, GraphRelationship, PendingSignal, ProfileEventKind,
                                      SignalType)
from agent_memory.services.memory_management import MemoryService
from agent_memory.services.memory_search import chunk_document_id
from agent_memory.utils.config import MemoryConfig
from agent_memory.utils.health_check import check_health

from conftest import extraction_json


def _pending(storage, agent_id, message='I prefer tea'):
    storage.insert_pending_signal(
        PendingSignal(agent_id=agent_id, conversation_id=f'{agent_id}-conv', signal_type='preference', user_message=message))


# ── Disabled and Error Handling Tests ──


class TestBestEffort:
    def test_disabled_service_does_nothing(self, storage, model, search_index):
        service = MemoryService(storage, model, search_index, MemoryConfig(enabled=False))
        _pending(storage, 'agent-1')

        service.process_immediate_signals([SignalType.PREFERENCE], 'I prefer tea', None, 'agent-1', 'conv-1')
        service.sync_now()

        assert model.calls == []
        assert service.assemble_context('agent-1') == ''
        assert service.search_memory_entries('tea') == []
        assert service.add_user_edit('Call me Sam') is None
        assert storage.load_user_edits() == []
        assert storage.pending_signal_count('agent-1') == 1

    def test_errors_never_escape(self, storage, model, search_index, events):
        broken = MagicMock()
        broken.search_memory_entries.side_effect = RuntimeError('boom')
        service = MemoryService(storage, model, search_index, events=events)
        service.search_index = broken

        assert service.search_memory_entries('tea') == []
        failed = events.events('operation_failed')
        assert failed[0].fields['operation'] == 'search_memory_entries'

    def test_unexpected_batched_failure_is_swallowed(self, service, storage, model, events):
        _pending(storage, 'agent-1')
        model.queue(RuntimeError('boom'))

        assert service.process_post_activity('agent-1') is None
        assert events.events('operation_failed')
        assert service.processing_state.status('agent-1') == AgentStatus.IDLE


# ── Processing Tests ──


class TestProcessing:
    def test_immediate_signals(self, service, storage, model):
        model.queue(extraction_json(entries=[{'type': 'fact', 'content': 'Lives in Oslo'}]))
        service.process_immediate_signals([SignalType.IDENTITY], 'I live in Oslo', None, 'agent-1', 'conv-1')
        assert [e.content for e in storage.load_active_entries('agent-1')] == ['Lives in Oslo']

    def test_sync_now_processes_every_agent_then_profile(self, service, storage, model, memory_config):
        _pending(storage, 'agent-1')
        _pending(storage, 'agent-2')
        model.queue(extraction_json(profile_facts=['Likes tea']))
        model.queue('Likes tea.')  # bootstrap regeneration after agent-1
        model.queue(extraction_json(profile_facts=['Works nights']))
        model.queue('Likes tea and works nights.')

        service.sync_now()

        assert storage.agents_with_pending_signals() == []
        # the second contribution is below the threshold of 3, so sync regenerates explicitly
        assert model.calls[-1]['prompt'].startswith('Current profile:\nLikes tea.')
        profile = storage.load_user_profile()
        assert (profile.version, profile.content) == (2, 'Likes tea and works nights.')
        assert storage.contribution_count_since_last_regeneration() == 0

    def test_regenerate_profile(self, service, storage, model):
        service.add_user_edit('Call me Sam')
        model.queue('Sam.')
        assert service.regenerate_profile().content == 'Sam.'


# ── Retrieval and Write Tests ──


class TestRetrieval:
    def test_user_edit_appears_in_context(self, service, storage):
        event = service.add_user_edit('  Always answer in French  ')

        assert event.kind == ProfileEventKind.USER_EDIT
        assert event.agent_id == 'user'
        assert service.assemble_context('agent-1') == '# User Overrides\n- Always answer in French'

    def test_blank_user_edit_ignored(self, service, storage):
        assert service.add_user_edit('   ') is None
        assert storage.load_user_edits() == []

    def test_store_and_search_conversation_chunk(self, service, storage, vector_index):
        chunk = ConversationChunk(conversation_id='conv-1',
                                  chunk_index=0,
                                  role='user',
                                  content='We compared sourdough recipes',
                                  token_count=6,
                                  agent_id='agent-1')

        assert service.store_conversation_chunk(chunk) is True
        assert chunk_document_id(chunk) in vector_index.documents
        results = service.search_conversations('sourdough recipes', agent_id='agent-1')
        assert [c.content for c in results] == ['We compared sourdough recipes']

    def test_search_uses_recall_top_k(self, storage, model, search_index, vector_index):
        service = MemoryService(storage, model, search_index, MemoryConfig(recall_top_k=3))
        service.search_memory_entries('anything')
        assert vector_index.search_calls[-1]['k'] == 6

    def test_explicit_zero_top_k_returns_nothing(self, service, storage, vector_index):
        chunk = ConversationChunk(conversation_id='conv-1',
                                  chunk_index=0,
                                  role='user',
                                  content='We compared sourdough recipes',
                                  token_count=6,
                                  agent_id='agent-1')
        service.store_conversation_chunk(chunk)

        assert service.search_conversations('sourdough', top_k=0) == []
        assert service.search_summaries('sourdough', top_k=0) == []
        assert service.search_memory_entries('sourdough', top_k=0) == []

    def test_search_graph(self, service, storage):
        sam = storage.resolve_or_create_entity('Sam', 'person')
        acme = storage.resolve_or_create_entity('Acme', 'organization')
        storage.insert_relationship(GraphRelationship(source_id=sam.id, target_id=acme.id, relation='works_at'))

        assert [r.describe() for r in service.search_graph('sam')] == ['Sam works_at Acme']
        assert service.search_graph('nobody') == []

    def test_rebuild_and_reset_index(self, service, storage, vector_index):
        vector_index.documents['stale'] = 'stale'

        assert service.rebuild_index() == 0
        assert vector_index.documents == {}
        vector_index.documents['again'] = 'x'
        assert service.reset_index() is True
        assert vector_index.documents == {}


# ── Lifecycle Tests ──


class TestLifecycle:
    def test_record_activity(self, service, storage):
        _pending(storage, 'agent-1')
        service.record_activity('agent-1')
        assert storage.agents_needing_processing(3600) == []

    def test_health_status(self, storage, model, search_index):
        router = MagicMock()
        router.resolve.return_value = MagicMock(service_id='bedrock', **{'health_check.return_value': True})
        embedder = MagicMock(model_id='embed-model', **{'health_check.return_value': True})
        service = MemoryService(storage, router, search_index, embedder=embedder)

        status = service.get_health_status()

        assert status['model_backend']['healthy'] is True
        assert status['model_backend']['service'] == 'bedrock'
        assert status['bedrock_embed'] == {'healthy': True, 'service': 'Amazon Bedrock Embed', 'model': 'embed-model'}
        assert status['search_index']['healthy'] is True
        assert status['search_index']['fallback_active'] is False
        assert status['storage']['healthy'] is True
        assert 'graph_store' not in status

    def test_unresolved_model_reported_unhealthy(self, storage, search_index):
        router = MagicMock()
        router.resolve.return_value = None
        service = MemoryService(storage, router, search_index, embedder=MagicMock(model_id='e'))

        status = service.get_health_status()
        assert status['model_backend']['healthy'] is False

    def test_check_health_aggregates(self, storage, search_index, vector_index):
        router = MagicMock()
        router.resolve.return_value = MagicMock(service_id='bedrock', **{'health_check.return_value': True})
        embedder = MagicMock(model_id='e', **{'health_check.return_value': True})

        assert check_health(model_invoker=router, embedder=embedder, search_index=search_index, storage=storage)
        vector_index.fail = True
        assert not check_health(model_invoker=router, embedder=embedder, search_index=search_index, storage=storage)

    def test_close(self, storage, model, search_index):
        graph = MagicMock()
        service = MemoryService(storage, model, search_index, graph_store=graph)
        service.close()

        graph.close.assert_called_once()
        assert not storage.is_open
