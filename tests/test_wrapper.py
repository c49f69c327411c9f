"""Tests for src.wrapper invoke() and synthesize_image() with mocked providers."""
import asyncio
import json
import os
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import BaseModel

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

PNG_DATA_URI = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="


class Greeting(BaseModel):
    text: str
    count: int


def _image():
    from src.gideon.schemas import EncodedMedia

    return EncodedMedia.model_validate(PNG_DATA_URI)


def _async_client(**attrs):
    """A provider client mock usable as `async with Client() as client`."""
    client = MagicMock(**attrs)
    client.__aenter__.return_value = client
    client.__aexit__.return_value = False
    return client


def _openai_chat(content, refusal=None):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    response.choices[0].message.refusal = refusal
    create = AsyncMock(return_value=response)
    client = _async_client(chat=MagicMock(completions=MagicMock(create=create)))
    return client, create


@pytest.fixture(autouse=True)
def _reset_env(monkeypatch):
    monkeypatch.delenv("LLM_PROVIDER", raising=False)
    monkeypatch.delenv("INFERENCE_TIMEOUT_SEC", raising=False)
    monkeypatch.delenv("IMAGE_TIMEOUT_SEC", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "test-openai-key")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-anthropic-key")


def test_render_fills_placeholders():
    from src.wrapper import render

    assert render("Hello {name}, task: {task}", {"name": "Ada", "task": "sum", "extra": 1}) == "Hello Ada, task: sum"


def test_render_missing_placeholder_raises():
    from src.wrapper import render

    with pytest.raises(ValueError, match="task"):
        render("Do {task} for {name}", {"name": "Ada"})


def test_invoke_rejects_non_model_schema():
    from src.wrapper import invoke

    with pytest.raises(TypeError):
        asyncio.run(invoke("hi", {}, dict))


def test_invoke_missing_parameter_makes_no_call(monkeypatch):
    from src import wrapper

    calls = []

    async def track(prompt, schema, image):
        calls.append(prompt)

    monkeypatch.setattr(wrapper, "_invoke_openai", track)
    with pytest.raises(ValueError):
        asyncio.run(wrapper.invoke("Answer {question}", {}, Greeting))
    assert calls == []


def test_invoke_default_provider_calls_openai(monkeypatch):
    from src import wrapper

    async def openai_reply(prompt, schema, image):
        return Greeting(text="openai", count=1)

    async def anthropic_reply(prompt, schema, image):
        return Greeting(text="anthropic", count=1)

    monkeypatch.setattr(wrapper, "_invoke_openai", openai_reply)
    monkeypatch.setattr(wrapper, "_invoke_anthropic", anthropic_reply)
    assert asyncio.run(wrapper.invoke("Hi", {}, Greeting)).text == "openai"


def test_invoke_anthropic_provider_calls_anthropic(monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "anthropic")
    from src import wrapper

    async def openai_reply(prompt, schema, image):
        return Greeting(text="openai", count=1)

    async def anthropic_reply(prompt, schema, image):
        return Greeting(text="anthropic", count=1)

    monkeypatch.setattr(wrapper, "_invoke_openai", openai_reply)
    monkeypatch.setattr(wrapper, "_invoke_anthropic", anthropic_reply)
    assert asyncio.run(wrapper.invoke("Hi", {}, Greeting)).text == "anthropic"


def test_invoke_openai_returns_validated_model(monkeypatch):
    from src import wrapper

    client, create = _openai_chat(json.dumps({"text": "hello", "count": 2}))
    monkeypatch.setattr("openai.AsyncOpenAI", lambda: client)
    result = asyncio.run(wrapper.invoke("Say {word}", {"word": "hello"}, Greeting, image=_image()))
    assert result == Greeting(text="hello", count=2)

    kwargs = create.call_args.kwargs
    assert kwargs["response_format"]["json_schema"]["schema"] == Greeting.model_json_schema()
    user_content = kwargs["messages"][-1]["content"]
    assert user_content[0] == {"type": "text", "text": "Say hello"}
    assert user_content[1]["image_url"]["url"] == PNG_DATA_URI


def test_invoke_openai_refusal_is_invalid_output(monkeypatch):
    from src import wrapper

    client, _ = _openai_chat(None, refusal="I can't help with that.")
    monkeypatch.setattr("openai.AsyncOpenAI", lambda: client)
    with pytest.raises(wrapper.InferenceError) as info:
        asyncio.run(wrapper.invoke("Hi", {}, Greeting))
    assert info.value.kind == wrapper.INVALID_OUTPUT
    assert not info.value.retryable


def test_invoke_openai_non_conforming_reply_is_invalid_output(monkeypatch):
    from src import wrapper

    client, _ = _openai_chat(json.dumps({"text": "hello"}))
    monkeypatch.setattr("openai.AsyncOpenAI", lambda: client)
    with pytest.raises(wrapper.InferenceError) as info:
        asyncio.run(wrapper.invoke("Hi", {}, Greeting))
    assert info.value.kind == wrapper.INVALID_OUTPUT


def test_invoke_openai_malformed_json_is_invalid_output(monkeypatch):
    from src import wrapper

    client, _ = _openai_chat("not json at all")
    monkeypatch.setattr("openai.AsyncOpenAI", lambda: client)
    with pytest.raises(wrapper.InferenceError) as info:
        asyncio.run(wrapper.invoke("Hi", {}, Greeting))
    assert info.value.kind == wrapper.INVALID_OUTPUT


def test_invoke_timeout_is_transient(monkeypatch):
    monkeypatch.setenv("INFERENCE_TIMEOUT_SEC", "0.01")
    from src import wrapper

    async def slow(prompt, schema, image):
        await asyncio.sleep(1)

    monkeypatch.setattr(wrapper, "_invoke_openai", slow)
    with pytest.raises(wrapper.InferenceError) as info:
        asyncio.run(wrapper.invoke("Hi", {}, Greeting))
    assert info.value.kind == wrapper.TRANSIENT
    assert info.value.retryable


def test_invoke_connection_error_is_transient(monkeypatch):
    import httpx
    import openai

    from src import wrapper

    client, create = _openai_chat("{}")
    create.side_effect = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    monkeypatch.setattr("openai.AsyncOpenAI", lambda: client)
    with pytest.raises(wrapper.InferenceError) as info:
        asyncio.run(wrapper.invoke("Hi", {}, Greeting))
    assert info.value.kind == wrapper.TRANSIENT


def test_invoke_auth_error_is_unavailable(monkeypatch):
    import httpx
    import openai

    from src import wrapper

    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    client, create = _openai_chat("{}")
    create.side_effect = openai.AuthenticationError(
        "bad key", response=httpx.Response(401, request=request), body=None
    )
    monkeypatch.setattr("openai.AsyncOpenAI", lambda: client)
    with pytest.raises(wrapper.InferenceError) as info:
        asyncio.run(wrapper.invoke("Hi", {}, Greeting))
    assert info.value.kind == wrapper.UNAVAILABLE
    assert not info.value.retryable


def test_invoke_unrelated_exception_propagates(monkeypatch):
    from src import wrapper

    async def broken(prompt, schema, image):
        raise KeyError("bug")

    monkeypatch.setattr(wrapper, "_invoke_openai", broken)
    with pytest.raises(KeyError):
        asyncio.run(wrapper.invoke("Hi", {}, Greeting))


def test_invoke_anthropic_reads_tool_use_block(monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "anthropic")
    from src import wrapper

    block = SimpleNamespace(type="tool_use", name=wrapper.OUTPUT_TOOL_NAME, input={"text": "hey", "count": 3})
    create = AsyncMock(return_value=SimpleNamespace(content=[block]))
    monkeypatch.setattr("anthropic.AsyncAnthropic", lambda: _async_client(messages=MagicMock(create=create)))
    result = asyncio.run(wrapper.invoke("Hi", {}, Greeting, image=_image()))
    assert result == Greeting(text="hey", count=3)

    kwargs = create.call_args.kwargs
    assert kwargs["tools"][0]["input_schema"] == Greeting.model_json_schema()
    assert kwargs["tool_choice"] == {"type": "tool", "name": wrapper.OUTPUT_TOOL_NAME}
    content = kwargs["messages"][0]["content"]
    assert content[0]["source"]["media_type"] == "image/png"
    assert content[1] == {"type": "text", "text": "Hi"}


def test_invoke_anthropic_without_tool_use_is_invalid_output(monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "anthropic")
    from src import wrapper

    create = AsyncMock(return_value=SimpleNamespace(content=[SimpleNamespace(type="text", text="hello")]))
    monkeypatch.setattr("anthropic.AsyncAnthropic", lambda: _async_client(messages=MagicMock(create=create)))
    with pytest.raises(wrapper.InferenceError) as info:
        asyncio.run(wrapper.invoke("Hi", {}, Greeting))
    assert info.value.kind == wrapper.INVALID_OUTPUT


def test_synthesize_image_openai_returns_data_uri(monkeypatch):
    from src import wrapper

    generate = AsyncMock(return_value=SimpleNamespace(data=[SimpleNamespace(b64_json="aGVsbG8=", url=None)]))
    monkeypatch.setattr("openai.AsyncOpenAI", lambda: _async_client(images=MagicMock(generate=generate)))
    image = asyncio.run(wrapper.synthesize_image("A photo of {label}", {"label": "a cat"}))
    assert image.url == "data:image/png;base64,aGVsbG8="
    assert generate.call_args.kwargs["prompt"] == "A photo of a cat"


def test_synthesize_image_empty_response_is_invalid_output(monkeypatch):
    from src import wrapper

    generate = AsyncMock(return_value=SimpleNamespace(data=[]))
    monkeypatch.setattr("openai.AsyncOpenAI", lambda: _async_client(images=MagicMock(generate=generate)))
    with pytest.raises(wrapper.InferenceError) as info:
        asyncio.run(wrapper.synthesize_image("A photo", {}))
    assert info.value.kind == wrapper.INVALID_OUTPUT


def test_synthesize_image_anthropic_is_unavailable(monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "anthropic")
    from src import wrapper

    with pytest.raises(wrapper.InferenceError) as info:
        asyncio.run(wrapper.synthesize_image("A photo", {}))
    assert info.value.kind == wrapper.UNAVAILABLE


@pytest.mark.parametrize("provider,key", [("openai", "OPENAI_API_KEY"), ("anthropic", "ANTHROPIC_API_KEY")])
def test_invoke_without_credentials_is_unavailable(monkeypatch, provider, key):
    monkeypatch.setenv("LLM_PROVIDER", provider)
    monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("ANTHROPIC_AUTH_TOKEN", raising=False)
    from src import wrapper

    calls = []

    async def track(prompt, schema, image):
        calls.append(prompt)

    monkeypatch.setattr(wrapper, f"_invoke_{provider}", track)
    with pytest.raises(wrapper.InferenceError) as info:
        asyncio.run(wrapper.invoke("Hi", {}, Greeting))
    assert info.value.kind == wrapper.UNAVAILABLE
    assert key in info.value.message
    assert calls == []


def test_synthesize_image_without_credentials_is_unavailable(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    from src import wrapper

    with pytest.raises(wrapper.InferenceError) as info:
        asyncio.run(wrapper.synthesize_image("A photo", {}))
    assert info.value.kind == wrapper.UNAVAILABLE


def test_invoke_client_construction_error_is_unavailable(monkeypatch):
    import openai

    from src import wrapper

    def broken_client():
        raise openai.OpenAIError("The api_key client option must be set")

    monkeypatch.setattr("openai.AsyncOpenAI", broken_client)
    with pytest.raises(wrapper.InferenceError) as info:
        asyncio.run(wrapper.invoke("Hi", {}, Greeting))
    assert info.value.kind == wrapper.UNAVAILABLE
    assert isinstance(info.value.__cause__, openai.OpenAIError)


def test_invoke_closes_provider_client(monkeypatch):
    from src import wrapper

    client, _ = _openai_chat(json.dumps({"text": "hello", "count": 2}))
    monkeypatch.setattr("openai.AsyncOpenAI", lambda: client)
    asyncio.run(wrapper.invoke("Hi", {}, Greeting))
    client.__aenter__.assert_awaited_once()
    client.__aexit__.assert_awaited_once()
