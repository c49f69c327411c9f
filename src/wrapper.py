"""Inference wrapper: schema-checked structured calls over OpenAI (default) or Anthropic.

Two coroutines form the public surface:

invoke           Render a prompt template, send it (with an optional image) and
                 the JSON schema of a pydantic model to the provider, and return
                 an instance of that model.
synthesize_image Render a prompt template and ask the provider for one image.

Every provider failure is converted to InferenceError. A value is only returned
after it has been validated against the requested schema.

Environment variables
---------------------
LLM_PROVIDER          : "openai" (default) or "anthropic".
OPENAI_API_KEY        : Required for the openai provider.
ANTHROPIC_API_KEY     : Required for the anthropic provider (or ANTHROPIC_AUTH_TOKEN).
OPENAI_MODEL          : Chat model for OpenAI (default: gpt-4o-mini).
OPENAI_IMAGE_MODEL    : Image model for OpenAI (default: gpt-image-1).
ANTHROPIC_MODEL       : Model for Anthropic (default: claude-3-5-sonnet-20241022).
MAX_TOKENS            : Max tokens for Anthropic responses (default: 1024).
INFERENCE_TIMEOUT_SEC : Timeout for structured calls (default: 60).
IMAGE_TIMEOUT_SEC     : Timeout for image synthesis (default: 120).
"""
import asyncio
import json
import os
import string

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

load_dotenv()

TRANSIENT = "transient"
INVALID_OUTPUT = "invalid_output"
UNAVAILABLE = "unavailable"

OUTPUT_TOOL_NAME = "record_output"

CREDENTIAL_ENV = {
    "openai": ("OPENAI_API_KEY",),
    "anthropic": ("ANTHROPIC_API_KEY", "ANTHROPIC_AUTH_TOKEN"),
}


class InferenceError(Exception):
    """A failed inference call. kind is one of transient, invalid_output, unavailable."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.kind == TRANSIENT

    def __repr__(self) -> str:
        return f"InferenceError(kind={self.kind!r}, message={self.message!r})"


class GeneratedImage(BaseModel):
    """Result of an image synthesis call."""

    url: str


def render(prompt_template: str, params: dict) -> str:
    """Fill the {placeholders} of prompt_template from params. Raises ValueError if one is missing."""
    fields = {name for _, name, _, _ in string.Formatter().parse(prompt_template) if name}
    missing = sorted(fields - params.keys())
    if missing:
        raise ValueError(f"Missing prompt parameters: {', '.join(missing)}")
    return prompt_template.format(**params)


async def invoke(prompt_template: str, params: dict, output_schema: type[BaseModel], image=None) -> BaseModel:
    """Run one structured inference call and return a validated output_schema instance.

    Args:
        prompt_template: Prompt text with str.format placeholders.
        params: Values for every placeholder in prompt_template.
        output_schema: Pydantic model the reply must conform to.
        image: Optional EncodedMedia (anything with mime_type, data and data_uri) sent alongside the prompt.

    Raises:
        ValueError: A placeholder has no value in params.
        TypeError: output_schema is not a pydantic model class.
        InferenceError: The provider failed, timed out, is not configured, or returned a non-conforming value.
    """
    if not (isinstance(output_schema, type) and issubclass(output_schema, BaseModel)):
        raise TypeError(f"output_schema must be a pydantic model class, got {output_schema!r}")
    prompt = render(prompt_template, params)
    provider = _provider()
    _require_credentials(provider)
    if provider == "anthropic":
        call = _invoke_anthropic(prompt, output_schema, image)
    else:
        call = _invoke_openai(prompt, output_schema, image)
    return await _guarded(call, _timeout("INFERENCE_TIMEOUT_SEC", 60))


async def synthesize_image(prompt_template: str, params: dict) -> GeneratedImage:
    """Generate one image from a rendered prompt. Raises InferenceError on any failure."""
    prompt = render(prompt_template, params)
    provider = _provider()
    if provider == "anthropic":
        raise InferenceError(UNAVAILABLE, "Image synthesis is not supported by the anthropic provider")
    _require_credentials(provider)
    return await _guarded(_synthesize_openai(prompt), _timeout("IMAGE_TIMEOUT_SEC", 120))


def _provider() -> str:
    return os.environ.get("LLM_PROVIDER", "openai")


def _require_credentials(provider: str) -> None:
    """Raise InferenceError(unavailable) when the provider has no API key configured."""
    names = CREDENTIAL_ENV.get(provider, CREDENTIAL_ENV["openai"])
    if not any(os.environ.get(name) for name in names):
        raise InferenceError(UNAVAILABLE, f"No credentials for provider {provider!r}: set {' or '.join(names)}")


def _timeout(name: str, default: float) -> float:
    return float(os.environ.get(name) or default)


async def _guarded(call, timeout: float):
    try:
        return await asyncio.wait_for(call, timeout)
    except InferenceError:
        raise
    except asyncio.TimeoutError as exc:
        raise InferenceError(TRANSIENT, f"Inference call timed out after {timeout:g}s") from exc
    except ValidationError as exc:
        raise InferenceError(INVALID_OUTPUT, f"Response does not match schema: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise InferenceError(INVALID_OUTPUT, f"Response is not valid JSON: {exc}") from exc
    except Exception as exc:
        kind = _classify(exc)
        if kind is None:
            raise
        raise InferenceError(kind, f"{type(exc).__name__}: {exc}") from exc


def _classify(exc: Exception) -> str | None:
    """Map an SDK exception to an InferenceError kind; None for anything that is not a provider error."""
    import anthropic
    import openai

    for sdk in (openai, anthropic):
        if isinstance(exc, (sdk.APITimeoutError, sdk.APIConnectionError, sdk.RateLimitError, sdk.InternalServerError)):
            return TRANSIENT
        if isinstance(exc, sdk.APIStatusError):
            return UNAVAILABLE
        if isinstance(exc, sdk.APIError):
            return INVALID_OUTPUT
    # Client construction and configuration failures.
    if isinstance(exc, (openai.OpenAIError, anthropic.AnthropicError)):
        return UNAVAILABLE
    return None


def _schema_name(output_schema: type[BaseModel]) -> str:
    return output_schema.__name__.lower()


async def _invoke_openai(prompt: str, output_schema: type[BaseModel], image) -> BaseModel:
    from openai import AsyncOpenAI

    content = [{"type": "text", "text": prompt}]
    if image is not None:
        content.append({"type": "image_url", "image_url": {"url": image.data_uri}})
    async with AsyncOpenAI() as client:
        response = await client.chat.completions.create(
            model=os.environ.get("OPENAI_MODEL", "gpt-4o-mini"),
            messages=[
                {"role": "system", "content": "Format your response strictly according to the output schema. Return ONLY valid JSON."},
                {"role": "user", "content": content},
            ],
            response_format={
                "type": "json_schema",
                "json_schema": {
                    "name": _schema_name(output_schema),
                    "schema": output_schema.model_json_schema(),
                },
            },
        )
    msg = response.choices[0].message
    if getattr(msg, "refusal", None):
        raise InferenceError(INVALID_OUTPUT, f"Model refused: {msg.refusal}")
    if not msg.content:
        raise InferenceError(INVALID_OUTPUT, "Model returned an empty response")
    return output_schema.model_validate_json(msg.content)


async def _invoke_anthropic(prompt: str, output_schema: type[BaseModel], image) -> BaseModel:
    from anthropic import AsyncAnthropic

    content = []
    if image is not None:
        content.append({"type": "image", "source": {"type": "base64", "media_type": image.mime_type, "data": image.data}})
    content.append({"type": "text", "text": prompt})
    async with AsyncAnthropic() as client:
        response = await client.messages.create(
            model=os.environ.get("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022"),
            max_tokens=int(os.environ.get("MAX_TOKENS", "1024")),
            tools=[
                {
                    "name": OUTPUT_TOOL_NAME,
                    "description": "Record the response in the required output schema.",
                    "input_schema": output_schema.model_json_schema(),
                }
            ],
            tool_choice={"type": "tool", "name": OUTPUT_TOOL_NAME},
            messages=[{"role": "user", "content": content}],
        )
    for block in response.content:
        if getattr(block, "type", None) == "tool_use" and getattr(block, "name", None) == OUTPUT_TOOL_NAME:
            return output_schema.model_validate(block.input)
    raise InferenceError(INVALID_OUTPUT, "No tool_use block found in Anthropic response")


async def _synthesize_openai(prompt: str) -> GeneratedImage:
    from openai import AsyncOpenAI

    async with AsyncOpenAI() as client:
        response = await client.images.generate(
            model=os.environ.get("OPENAI_IMAGE_MODEL", "gpt-image-1"),
            prompt=prompt,
            n=1,
        )
    item = response.data[0] if response.data else None
    if item is not None and getattr(item, "b64_json", None):
        return GeneratedImage(url=f"data:image/png;base64,{item.b64_json}")
    if item is not None and getattr(item, "url", None):
        return GeneratedImage(url=item.url)
    raise InferenceError(INVALID_OUTPUT, "Image response contained no image")
