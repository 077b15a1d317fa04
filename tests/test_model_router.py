"""
Tests for model routing and the Bedrock text-generation backend.
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from agent_memory.utils.bedrock_llm import BedrockLLM, BedrockLLMError, BedrockModelNotServedError
from agent_memory.utils.config import BedrockLLMConfig
from agent_memory.utils.model_router import ModelRouter, ModelUnavailableError


def _llm_config(**overrides):
    values = dict(region='us-east-1',
                  model_id='model-a',
                  model_ids=['model-a', 'model-b'],
                  max_tokens=256,
                  temperature=0.3,
                  retry_attempts=2,
                  retry_delay=0.0)
    values.update(overrides)
    return BedrockLLMConfig(**values)


def _client_error(code):
    return ClientError({'Error': {'Code': code, 'Message': code}}, 'ConverseStream')


def _stream(*chunks):
    events = [{'contentBlockDelta': {'delta': {'text': chunk}}} for chunk in chunks]
    events.append({'metadata': {'usage': {'inputTokens': 5}, 'metrics': {'latencyMs': 12}}})
    return {'stream': events}


class TestModelRouter:
    def test_routes_to_first_backend_serving_model(self):
        first, second = MagicMock(service_id='one'), MagicMock(service_id='two')
        first.serves.return_value = False
        second.serves.return_value = True
        second.generate.return_value = 'ok'

        router = ModelRouter([first, second], temperature=0.1, max_tokens=99)

        assert router.generate('prompt', system_prompt='sys', model_id='m') == 'ok'
        second.generate.assert_called_once_with('prompt', system_prompt='sys', model_id='m', max_tokens=99, temperature=0.1)
        first.generate.assert_not_called()

    def test_unresolved_model_raises(self):
        backend = MagicMock(service_id='one')
        backend.serves.return_value = False

        with pytest.raises(ModelUnavailableError) as excinfo:
            ModelRouter([backend]).generate('prompt', model_id='missing')
        assert excinfo.value.model_id == 'missing'

    def test_backend_refusal_becomes_unavailable(self):
        backend = MagicMock(service_id='bedrock')
        backend.serves.return_value = True
        backend.generate.side_effect = BedrockModelNotServedError('not enabled')

        with pytest.raises(ModelUnavailableError):
            ModelRouter([backend]).generate('prompt', model_id='m')

    def test_other_backend_errors_propagate(self):
        backend = MagicMock(service_id='bedrock')
        backend.serves.return_value = True
        backend.generate.side_effect = BedrockLLMError('throttled')

        with pytest.raises(BedrockLLMError):
            ModelRouter([backend]).generate('prompt', model_id='m')


class TestBedrockLLM:
    def test_serves_configured_models_with_prefix(self):
        llm = BedrockLLM(_llm_config(), client=MagicMock())
        assert llm.serves('model-b')
        assert llm.serves('bedrock/model-a')
        assert not llm.serves('model-z')

    def test_generate_collects_stream(self):
        client = MagicMock()
        client.converse_stream.return_value = _stream('Hello', ' world')
        llm = BedrockLLM(_llm_config(), client=client)

        assert llm.generate('hi', system_prompt='be brief', model_id='bedrock/model-b') == 'Hello world'
        request = client.converse_stream.call_args.kwargs
        assert request['modelId'] == 'model-b'
        assert request['system'] == [{'text': 'be brief'}]
        assert request['inferenceConfig']['maxTokens'] == 256

    def test_metrics_returned(self):
        client = MagicMock()
        client.converse_stream.return_value = _stream('x')
        _, metrics = BedrockLLM(_llm_config(), client=client).generate_response([{'role': 'user', 'content': []}])
        assert metrics == {'inputTokens': 5, 'latencyMs': 12}

    def test_unservable_model_code(self):
        client = MagicMock()
        client.converse_stream.side_effect = _client_error('ResourceNotFoundException')

        with pytest.raises(BedrockModelNotServedError):
            BedrockLLM(_llm_config(), client=client).generate('hi')
        assert client.converse_stream.call_count == 1

    def test_retries_then_fails(self, monkeypatch):
        monkeypatch.setattr('agent_memory.utils.bedrock_llm.time.sleep', lambda _: None)
        client = MagicMock()
        client.converse_stream.side_effect = _client_error('ThrottlingException')

        with pytest.raises(BedrockLLMError):
            BedrockLLM(_llm_config(), client=client).generate('hi')
        assert client.converse_stream.call_count == 2

    def test_retry_recovers(self, monkeypatch):
        monkeypatch.setattr('agent_memory.utils.bedrock_llm.time.sleep', lambda _: None)
        client = MagicMock()
        client.converse_stream.side_effect = [_client_error('ThrottlingException'), _stream('ok')]

        assert BedrockLLM(_llm_config(), client=client).generate('hi') == 'ok'

    def test_health_check(self):
        client = MagicMock()
        client.converse_stream.return_value = _stream('OK')
        assert BedrockLLM(_llm_config(), client=client).health_check() is True

        client.converse_stream.side_effect = _client_error('AccessDeniedException')
        assert BedrockLLM(_llm_config(), client=client).health_check() is False
