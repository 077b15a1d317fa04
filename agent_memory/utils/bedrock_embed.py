"""
Amazon Bedrock embedding client used by the hybrid search index.
"""

import json
import random
import time
from typing import Any, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig, client: Optional[Any] = None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        if 'cohere' in self.model_id.lower() and self.dimension != 1024:
            raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}')

        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _embed(self, texts: List[str], input_type: str) -> List[List[float]]:
        model = self.model_id.lower()
        if 'titan' in model:
            # Titan embeds one text per request
            return [
                self._call_with_retry({
                    'inputText': text,
                    'dimensions': self.dimension
                }).get('embedding', [0.0] * self.dimension) for text in texts
            ]
        if 'cohere' in model:
            response = self._call_with_retry({'input_type': input_type, 'texts': texts})
            embeddings = response.get('embeddings') or []
            if len(embeddings) != len(texts):
                raise BedrockEmbedError(f'Expected {len(texts)} embeddings, got {len(embeddings)}')
            return embeddings
        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        """Embed documents for indexing; blank texts map to zero vectors."""
        vectors: List[Optional[List[float]]] = [None] * len(texts)
        pending = [(i, text) for i, text in enumerate(texts) if text and text.strip()]
        if pending:
            embedded = self._embed([text for _, text in pending], 'search_document')
            for (i, _), vector in zip(pending, embedded):
                vectors[i] = vector
        return [vector or [0.0] * self.dimension for vector in vectors]

    def embed_document(self, text: str) -> List[float]:
        return self.embed_documents([text])[0]

    def embed_query(self, text: str) -> List[float]:
        if not text or not text.strip():
            logger.warning('Empty text provided for query embedding')
            return [0.0] * self.dimension
        return self._embed([text], 'search_query')[0]

    def health_check(self) -> bool:
        try:
            return len(self.embed_document('test')) == self.dimension
        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
