"""
Configuration management for AWS services, storage and memory settings.
"""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes')


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(',') if item.strip()]


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    model_ids: List[str]
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for the OpenSearch hybrid index."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    vector_weight: float = 0.5
    index_ready_wait_seconds: float = 15.0


@dataclass
class StorageConfig:
    """Configuration for the durable SQLite store."""
    database_path: str


@dataclass
class MemoryConfig:
    """Configuration for memory extraction, consolidation and retrieval."""
    enabled: bool = True
    core_model_id: str = 'anthropic.claude-3-haiku-20240307-v1:0'
    inactivity_timeout_seconds: int = 300
    profile_max_tokens: int = 2000
    profile_regenerate_threshold: int = 10
    working_memory_budget_tokens: int = 500
    summary_retention_days: int = 7
    summary_budget_tokens: int = 1000
    graph_budget_tokens: int = 300
    graph_context_limit: int = 20
    recall_top_k: int = 10
    mmr_lambda: float = 0.7
    mmr_fetch_multiplier: float = 2.0
    search_threshold: float = 0.3
    contradiction_threshold: float = 0.3
    dedup_threshold: float = 0.6
    graph_backend: str = 'sqlite'

    @classmethod
    def from_env(cls) -> 'MemoryConfig':
        """Load memory configuration from environment variables."""
        return cls(enabled=_env_bool('MEMORY_ENABLED', 'true'),
                   core_model_id=os.getenv('MEMORY_CORE_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                   inactivity_timeout_seconds=int(os.getenv('MEMORY_INACTIVITY_TIMEOUT_SECONDS', '300')),
                   profile_max_tokens=int(os.getenv('MEMORY_PROFILE_MAX_TOKENS', '2000')),
                   profile_regenerate_threshold=int(os.getenv('MEMORY_PROFILE_REGENERATE_THRESHOLD', '10')),
                   working_memory_budget_tokens=int(os.getenv('MEMORY_WORKING_MEMORY_BUDGET_TOKENS', '500')),
                   summary_retention_days=int(os.getenv('MEMORY_SUMMARY_RETENTION_DAYS', '7')),
                   summary_budget_tokens=int(os.getenv('MEMORY_SUMMARY_BUDGET_TOKENS', '1000')),
                   graph_budget_tokens=int(os.getenv('MEMORY_GRAPH_BUDGET_TOKENS', '300')),
                   graph_context_limit=int(os.getenv('MEMORY_GRAPH_CONTEXT_LIMIT', '20')),
                   recall_top_k=int(os.getenv('MEMORY_RECALL_TOP_K', '10')),
                   mmr_lambda=float(os.getenv('MEMORY_MMR_LAMBDA', '0.7')),
                   mmr_fetch_multiplier=float(os.getenv('MEMORY_MMR_FETCH_MULTIPLIER', '2.0')),
                   search_threshold=float(os.getenv('MEMORY_SEARCH_THRESHOLD', '0.3')),
                   contradiction_threshold=float(os.getenv('MEMORY_CONTRADICTION_THRESHOLD', '0.3')),
                   dedup_threshold=float(os.getenv('MEMORY_DEDUP_THRESHOLD', '0.6')),
                   graph_backend=os.getenv('MEMORY_GRAPH_BACKEND', 'sqlite').lower())


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    storage: StorageConfig
    memory: MemoryConfig = field(default_factory=MemoryConfig)


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    memory_config = MemoryConfig.from_env()

    # Bedrock configuration
    default_model = os.getenv('BEDROCK_LLM_MODEL_ID', memory_config.core_model_id)
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=default_model,
                                          model_ids=_env_list('BEDROCK_LLM_MODEL_IDS', default_model),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2048')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.3')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Hybrid search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'agent_memory'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         vector_weight=float(os.getenv('OPENSEARCH_VECTOR_WEIGHT', '0.5')),
                                         index_ready_wait_seconds=float(os.getenv('OPENSEARCH_INDEX_READY_WAIT', '15')))

    storage_config = StorageConfig(
        database_path=os.getenv('MEMORY_DATABASE_PATH', os.path.expanduser('~/.agent_memory/memory.db')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     storage=storage_config,
                     memory=memory_config)


# Global configuration instance
config = load_config()
