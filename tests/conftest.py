"""
Shared fixtures: a temporary SQLite store, an in-memory vector index, a
scripted model invoker and a recording event log.
"""

import json
from typing import Dict, List, Optional

import pytest

from agent_memory.models.core import SearchHit
from agent_memory.services.extraction import ExtractionOrchestrator
from agent_memory.services.memory_management import MemoryService
from agent_memory.services.memory_search import HybridSearchIndex
from agent_memory.utils.config import MemoryConfig, StorageConfig
from agent_memory.utils.logging_config import MemoryEventLog
from agent_memory.utils.model_router import ModelUnavailableError
from agent_memory.utils.opensearch_client import OpenSearchError
from agent_memory.utils.sqlite_client import MemoryDatabase
from agent_memory.utils.text_similarity import tokenize


class FakeVectorIndex:
    """VectorIndex double keeping documents in a dict.

    Scores are the share of query words found in the document. Set ``fail``
    to make every call raise ``error``, or ``hits`` to script search results.
    """

    def __init__(self):
        self.documents: Dict[str, str] = {}
        self.fail = False
        self.error: Exception = OpenSearchError('index unavailable')
        self.hits: Optional[List[SearchHit]] = None
        self.search_calls = []
        self.reset_count = 0

    def _check(self):
        if self.fail:
            raise self.error

    def create_index_if_not_exists(self) -> str:
        self._check()
        return 'exists'

    def add_document(self, text: str, doc_id: str) -> None:
        self._check()
        self.documents[doc_id] = text

    def add_documents(self, texts: List[str], ids: List[str]) -> None:
        self._check()
        self.documents.update(zip(ids, texts))

    def search(self, query: str, k: int = 10, threshold: float = 0.0) -> List[SearchHit]:
        self._check()
        self.search_calls.append({'query': query, 'k': k, 'threshold': threshold})
        if self.hits is not None:
            return self.hits[:k]
        words = tokenize(query)
        hits = []
        for doc_id, text in self.documents.items():
            score = len(words & tokenize(text)) / len(words) if words else 0.0
            if score > 0 and score >= threshold:
                hits.append(SearchHit(id=doc_id, score=score, text=text))
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:k]

    def delete_documents(self, ids: List[str]) -> None:
        self._check()
        for doc_id in ids:
            self.documents.pop(doc_id, None)

    def reset(self) -> None:
        self._check()
        self.reset_count += 1
        self.documents.clear()

    def health_check(self) -> bool:
        return not self.fail


class ScriptedModelInvoker:
    """ModelInvoker double returning queued responses in order.

    A queued exception is raised instead of returned. With ``unavailable``
    set, every call raises ModelUnavailableError.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []
        self.unavailable = False

    def queue(self, response) -> None:
        self.responses.append(response)

    def generate(self, prompt: str, system_prompt: Optional[str] = None, model_id: str = '') -> str:
        self.calls.append({'prompt': prompt, 'system_prompt': system_prompt, 'model_id': model_id})
        if self.unavailable:
            raise ModelUnavailableError(model_id)
        if not self.responses:
            return '{}'
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def extraction_json(entries=None, profile_facts=None, summary=None, entities=None, relationships=None) -> str:
    return json.dumps({
        'entries': entries or [],
        'profile_facts': profile_facts or [],
        'summary': summary,
        'entities': entities or [],
        'relationships': relationships or []
    })


@pytest.fixture
def memory_config():
    return MemoryConfig(profile_regenerate_threshold=3)


@pytest.fixture
def storage(tmp_path):
    db = MemoryDatabase(StorageConfig(database_path=str(tmp_path / 'memory.db')))
    yield db
    db.close()


@pytest.fixture
def events():
    return MemoryEventLog()


@pytest.fixture
def vector_index():
    return FakeVectorIndex()


@pytest.fixture
def model():
    return ScriptedModelInvoker()


@pytest.fixture
def search_index(storage, vector_index, memory_config, events):
    return HybridSearchIndex(storage, vector_index, memory_config, events)


@pytest.fixture
def orchestrator(storage, model, search_index, memory_config, events):
    return ExtractionOrchestrator(storage, model, search_index, memory_config, events=events)


@pytest.fixture
def service(storage, model, search_index, memory_config, events):
    svc = MemoryService(storage, model, search_index, memory_config, events=events)
    yield svc
    svc.stop_activity_tracking()
