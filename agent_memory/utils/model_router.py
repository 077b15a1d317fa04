"""
Routes memory prompts to whichever text-generation backend serves the model.
"""

from typing import List, Optional, Sequence

from .bedrock_llm import BedrockModelNotServedError
from .logging_config import get_logger

logger = get_logger(__name__)


class ModelUnavailableError(Exception):
    """No backend can serve the requested model."""

    def __init__(self, model_id: str):
        super().__init__(f"Core model '{model_id}' is not available for memory processing")
        self.model_id = model_id


class ModelRouter:
    """ModelInvoker over an ordered list of backends.

    A backend exposes ``service_id``, ``serves(model_id)`` and
    ``generate(prompt, system_prompt, model_id, max_tokens, temperature)``.
    """

    def __init__(self, backends: Sequence, temperature: float = 0.3, max_tokens: int = 2048):
        self.backends: List = list(backends)
        self.temperature = temperature
        self.max_tokens = max_tokens

    def resolve(self, model_id: str):
        for backend in self.backends:
            if backend.serves(model_id):
                return backend
        return None

    def generate(self, prompt: str, system_prompt: Optional[str] = None, model_id: str = '') -> str:
        """
        Generate text for a prompt with the requested model.

        Raises:
            ModelUnavailableError: If no backend resolves the model
        """
        backend = self.resolve(model_id)
        if backend is None:
            logger.warning(f"No service found for model '{model_id}' among {[b.service_id for b in self.backends]}")
            raise ModelUnavailableError(model_id)

        logger.debug(f'Routing to {backend.service_id} (model: {model_id}, prompt: {len(prompt)} chars)')
        try:
            return backend.generate(prompt,
                                    system_prompt=system_prompt,
                                    model_id=model_id,
                                    max_tokens=self.max_tokens,
                                    temperature=self.temperature)
        except BedrockModelNotServedError as e:
            logger.warning(f'{backend.service_id} refused model {model_id}: {e}')
            raise ModelUnavailableError(model_id) from e
