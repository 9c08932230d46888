from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import openai
import pytest

from x402_query.context import Turn
from x402_query.errors import ConfigurationError, UpstreamProducerError
from x402_query.producer import MEDICAL_SYSTEM_PROMPT, OpenAIChatProducer


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def stream_chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


async def chunk_stream(*contents, error=None):
    for content in contents:
        yield stream_chunk(content)
    if error is not None:
        raise error


@pytest.fixture
def client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    return client


@pytest.fixture
def producer(client):
    return OpenAIChatProducer(client=client, model="test-model")


def test_requires_api_key():
    with pytest.raises(ConfigurationError, match="NILLION_API_KEY"):
        OpenAIChatProducer(api_key=None)


def test_model(producer):
    assert producer.model == "test-model"


async def test_process_query(producer, client):
    client.chat.completions.create.return_value = completion("Try a regular bedtime.")
    history = [
        Turn(role="user", content="I can't sleep"),
        Turn(role="assistant", content="How long has this been going on?"),
    ]

    answer = await producer.process_query("Two weeks", history)

    assert answer == "Try a regular bedtime."
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert kwargs["messages"] == [
        {"role": "system", "content": MEDICAL_SYSTEM_PROMPT},
        {"role": "user", "content": "I can't sleep"},
        {"role": "assistant", "content": "How long has this been going on?"},
        {"role": "user", "content": "Two weeks"},
    ]
    assert kwargs["extra_body"] == {"web_search": True}


async def test_process_query_upstream_error(producer, client):
    client.chat.completions.create.side_effect = openai.OpenAIError("service unavailable")

    with pytest.raises(UpstreamProducerError):
        await producer.process_query("hello")


async def test_process_query_empty_response(producer, client):
    client.chat.completions.create.return_value = completion(None)

    with pytest.raises(UpstreamProducerError, match="No response"):
        await producer.process_query("hello")


async def test_stream_query(producer, client):
    client.chat.completions.create.return_value = chunk_stream("Try ", None, "resting.")

    chunks = [chunk async for chunk in producer.stream_query("hello")]

    assert chunks == ["Try ", "resting."]
    assert client.chat.completions.create.call_args.kwargs["stream"] is True


async def test_stream_query_error_mid_stream(producer, client):
    client.chat.completions.create.return_value = chunk_stream(
        "Try ", error=openai.OpenAIError("connection reset")
    )

    received = []
    with pytest.raises(UpstreamProducerError):
        async for chunk in producer.stream_query("hello"):
            received.append(chunk)
    assert received == ["Try "]
