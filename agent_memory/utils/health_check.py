"""
Health check utilities for the memory subsystem's backends.
"""

from typing import Any, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .model_router import ModelRouter

logger = get_logger(__name__)


def check_health(**components) -> bool:
    """Check the health of all memory components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(**components)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All memory components are healthy')
        else:
            logger.warning('Some memory components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(model_invoker: Optional[Any] = None,
                      embedder: Optional[Any] = None,
                      search_index: Optional[Any] = None,
                      graph_store: Optional[Any] = None,
                      storage: Optional[Any] = None) -> Dict[str, Any]:
    """Get detailed health status of each memory component.

    Components that are not passed in are built from the global configuration,
    except the search index, graph store and storage, which are only reported
    when given.

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}
    model_id = config.memory.core_model_id

    # Model backend
    try:
        router = model_invoker or ModelRouter([BedrockLLM(config.bedrock_llm)])
        backend = router.resolve(model_id)
        health_status['model_backend'] = {
            'healthy': backend is not None and backend.health_check(),
            'service': backend.service_id if backend is not None else None,
            'model': model_id
        }
    except Exception as e:
        health_status['model_backend'] = {'healthy': False, 'model': model_id, 'error': str(e)}

    # Embeddings
    try:
        embed = embedder or BedrockEmbed(config.bedrock_embed)
        health_status['bedrock_embed'] = {
            'healthy': embed.health_check(),
            'service': 'Amazon Bedrock Embed',
            'model': embed.model_id
        }
    except Exception as e:
        health_status['bedrock_embed'] = {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': str(e)}

    if search_index is not None:
        try:
            available = search_index.is_available
            health_status['search_index'] = {
                'healthy': available and search_index.backend.health_check(),
                'service': 'Amazon OpenSearch',
                'fallback_active': not available
            }
        except Exception as e:
            health_status['search_index'] = {'healthy': False, 'service': 'Amazon OpenSearch', 'error': str(e)}

    if graph_store is not None and graph_store is not storage:
        try:
            health_status['graph_store'] = {'healthy': graph_store.health_check(), 'service': 'Amazon Neptune'}
        except Exception as e:
            health_status['graph_store'] = {'healthy': False, 'service': 'Amazon Neptune', 'error': str(e)}

    if storage is not None:
        health_status['storage'] = {
            'healthy': storage.is_open,
            'service': 'SQLite',
            'path': storage.config.database_path
        }

    return health_status
