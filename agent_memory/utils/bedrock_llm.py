"""
Amazon Bedrock LLM backend with retry logic and error handling.
"""

import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Bedrock error codes meaning the requested model cannot be served at all
UNSERVABLE_MODEL_CODES = {'ResourceNotFoundException', 'AccessDeniedException'}


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockModelNotServedError(BedrockLLMError):
    """Bedrock rejected the model id itself (unknown or not enabled)."""
    pass


class BedrockLLM:
    """Amazon Bedrock text-generation backend using the Converse streaming API."""

    service_id = 'bedrock'

    def __init__(self, config: BedrockLLMConfig, client: Optional[Any] = None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id
        self.model_ids = set(config.model_ids) | {config.model_id}

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=600,
                read_timeout=600,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM backend serving: {sorted(self.model_ids)}')

    def serves(self, model_id: str) -> bool:
        """Whether this backend can serve the requested model id."""
        return self._strip_prefix(model_id) in self.model_ids

    def generate(self,
                 prompt: str,
                 system_prompt: Optional[str] = None,
                 model_id: Optional[str] = None,
                 max_tokens: Optional[int] = None,
                 temperature: Optional[float] = None) -> str:
        """Generate a one-shot completion for a single user prompt."""
        messages = [{'role': 'user', 'content': [{'text': prompt}]}]
        response, _ = self.generate_response(messages=messages,
                                             system_prompt=system_prompt,
                                             model_id=model_id,
                                             max_tokens=max_tokens,
                                             temperature=temperature)
        return response

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: Optional[str] = None,
                          model_id: Optional[str] = None,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate response using Bedrock LLM with retry logic.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: Optional system prompt for the conversation
            model_id: Model to invoke (uses config default if None)
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockModelNotServedError: If Bedrock rejects the model id
            BedrockLLMError: If all retry attempts fail
        """
        model_id = self._strip_prefix(model_id or self.model_id)
        inf_params = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }
        request = {'modelId': model_id, 'messages': messages, 'inferenceConfig': inf_params}
        if system_prompt:
            request['system'] = [{'text': system_prompt}]

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts} ({model_id})')

                stream = self.bedrock_runtime.converse_stream(**request).get('stream')

                msg = ''
                invoke_metrics = None

                if stream:
                    for event in stream:
                        if 'contentBlockDelta' in event:
                            msg += event['contentBlockDelta']['delta'].get('text', '')
                        if 'metadata' in event:
                            invoke_metrics = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}

                logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
                return msg, invoke_metrics

            except ClientError as e:
                code = e.response.get('Error', {}).get('Code', '')
                if code in UNSERVABLE_MODEL_CODES:
                    raise BedrockModelNotServedError(f'Bedrock cannot serve model {model_id}: {e}')
                self._backoff_or_raise(attempt, e)

            except BotoCoreError as e:
                self._backoff_or_raise(attempt, e)

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def _backoff_or_raise(self, attempt: int, error: Exception) -> None:
        logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {error}')
        if attempt >= self.config.retry_attempts - 1:
            raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {error}')
        # Exponential backoff with jitter
        time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 1))

    @staticmethod
    def _strip_prefix(model_id: str) -> str:
        if model_id and model_id.startswith('bedrock/'):
            return model_id[len('bedrock/'):]
        return model_id

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.generate('Hi',
                                     system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                     max_tokens=10,
                                     temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
