"""Tests for the Bedrock embedding and LLM wrappers."""

import io
import json
from unittest import mock

import pytest
from botocore.exceptions import ClientError

from companion_memory.utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from companion_memory.utils.bedrock_llm import BedrockLLM, BedrockLLMError
from companion_memory.utils.config import BedrockEmbedConfig, BedrockLLMConfig


def _throttled(operation):
    return ClientError({'Error': {'Code': 'ThrottlingException', 'Message': 'slow down'},
                        'ResponseMetadata': {'HTTPStatusCode': 429}}, operation)


def _body(payload):
    return {'body': io.BytesIO(json.dumps(payload).encode('utf-8'))}


@pytest.fixture
def embed_config():
    return BedrockEmbedConfig(region='us-east-1',
                              model_id='amazon.titan-embed-text-v2:0',
                              dimension=3,
                              retry_attempts=2,
                              retry_delay=0.0)


@pytest.fixture
def llm_config():
    return BedrockLLMConfig(region='us-east-1',
                            model_id='anthropic.claude-3-haiku-20240307-v1:0',
                            max_tokens=256,
                            temperature=0.7,
                            retry_attempts=2,
                            retry_delay=0.0)


@pytest.fixture(autouse=True)
def no_sleep():
    with mock.patch('time.sleep'):
        yield


def test_titan_query_embedding(embed_config):
    runtime = mock.MagicMock()
    runtime.invoke_model.return_value = _body({'embedding': [1, 2, 3]})

    vector = BedrockEmbed(embed_config, client=runtime).embed_query('hello')

    assert vector == [1.0, 2.0, 3.0]
    request = json.loads(runtime.invoke_model.call_args.kwargs['body'])
    assert request == {'inputText': 'hello', 'dimensions': 3}


def test_cohere_query_uses_search_query_input_type(embed_config):
    embed_config.model_id = 'cohere.embed-english-v3'
    embed_config.dimension = 1024
    runtime = mock.MagicMock()
    runtime.invoke_model.return_value = _body({'embeddings': [[0.5] * 1024]})

    BedrockEmbed(embed_config, client=runtime).embed_query('hello')

    request = json.loads(runtime.invoke_model.call_args.kwargs['body'])
    assert request['input_type'] == 'search_query'


def test_embedding_retries_then_succeeds(embed_config):
    runtime = mock.MagicMock()
    runtime.invoke_model.side_effect = [_throttled('InvokeModel'), _body({'embedding': [1, 2, 3]})]

    assert BedrockEmbed(embed_config, client=runtime).embed_query('hello') == [1.0, 2.0, 3.0]
    assert runtime.invoke_model.call_count == 2


def test_embedding_gives_up_after_retries(embed_config):
    runtime = mock.MagicMock()
    runtime.invoke_model.side_effect = _throttled('InvokeModel')

    with pytest.raises(BedrockEmbedError):
        BedrockEmbed(embed_config, client=runtime).embed_query('hello')


def test_blank_text_is_rejected(embed_config):
    runtime = mock.MagicMock()

    with pytest.raises(BedrockEmbedError):
        BedrockEmbed(embed_config, client=runtime).embed_query('  ')
    runtime.invoke_model.assert_not_called()


def test_llm_streams_tokens(llm_config):
    runtime = mock.MagicMock()
    runtime.converse_stream.return_value = {'stream': [
        {'contentBlockDelta': {'delta': {'text': 'Hel'}}},
        {'contentBlockDelta': {'delta': {'text': 'lo'}}},
        {'metadata': {'usage': {'outputTokens': 2}, 'metrics': {'latencyMs': 10}}},
    ]}
    tokens = []

    text, metrics = BedrockLLM(llm_config, client=runtime).generate_response(
        messages=[{'role': 'user', 'content': [{'text': 'hi'}]}], system_prompt='be nice', on_token=tokens.append)

    assert text == 'Hello'
    assert tokens == ['Hel', 'lo']
    assert metrics == {'outputTokens': 2, 'latencyMs': 10}
    assert runtime.converse_stream.call_args.kwargs['system'] == [{'text': 'be nice'}]


def test_llm_failure_carries_status(llm_config):
    runtime = mock.MagicMock()
    runtime.converse_stream.side_effect = _throttled('ConverseStream')

    with pytest.raises(BedrockLLMError) as excinfo:
        BedrockLLM(llm_config, client=runtime).generate_response(messages=[], system_prompt='x')

    assert excinfo.value.status == 429
    assert runtime.converse_stream.call_count == 2
