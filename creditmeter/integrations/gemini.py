"""Gemini generation client (server-side key) and the collaborator protocol it fulfils."""

import base64
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

from google import genai
from google.genai import types

from creditmeter.core.exceptions import FailedPreconditionError, InvalidArgumentError
from creditmeter.core.logging import get_logger
from creditmeter.services.pricing import TokenUsage

log = get_logger(__name__)

_DATA_URL_PREFIX = re.compile(r"^data:image/(png|jpeg|webp);base64,")


@dataclass
class GenerationResult:
    text: str
    thoughts: str | None
    usage: TokenUsage | None  # None when the model response carried no usage metadata


@dataclass
class GenerationChunk:
    kind: str  # "thought" | "output" | "usage" (last chunk, usage may be None)
    text: str = ""
    usage: TokenUsage | None = None


class GenerationClient(Protocol):
    async def count_tokens(self, action: str, payload: dict[str, Any]) -> int: ...

    async def generate(self, action: str, payload: dict[str, Any]) -> GenerationResult: ...

    def stream(self, action: str, payload: dict[str, Any]) -> AsyncIterator[GenerationChunk]: ...


def build_contents(action: str, payload: dict[str, Any]) -> list[types.Part]:
    """Wire the caller's payload into request parts; prompt wording lives client-side."""
    parts: list[types.Part] = []
    if action == "evaluate":
        image = payload.get("image_base64")
        if not image:
            raise InvalidArgumentError("imageBase64 required for evaluate")
        try:
            data = base64.b64decode(_DATA_URL_PREFIX.sub("", image), validate=True)
        except ValueError as e:
            raise InvalidArgumentError("imageBase64 is not valid base64") from e
        parts.append(types.Part.from_bytes(data=data, mime_type="image/png"))
    for key in ("prompt", "plan", "svg_code", "critique"):
        value = payload.get(key)
        if value:
            parts.append(types.Part.from_text(text=f"{key}:\n{value}"))
    if payload.get("iteration") is not None:
        parts.append(types.Part.from_text(text=f"iteration: {payload['iteration']}"))
    if not parts:
        raise InvalidArgumentError("Empty prompt payload")
    return parts


def usage_from_metadata(metadata) -> TokenUsage | None:
    if metadata is None or metadata.prompt_token_count is None:
        return None
    return TokenUsage(
        input_tokens=metadata.prompt_token_count or 0,
        output_tokens=metadata.candidates_token_count or 0,
        thought_tokens=metadata.thoughts_token_count or 0,
    )


def _split_parts(response) -> tuple[str, str]:
    text, thoughts = [], []
    candidates = response.candidates or []
    if candidates and candidates[0].content and candidates[0].content.parts:
        for part in candidates[0].content.parts:
            if not part.text:
                continue
            (thoughts if part.thought else text).append(part.text)
    return "".join(text), "".join(thoughts)


class GeminiGenerationClient:
    def __init__(self, api_key: str, model_id: str = "gemini-2.5-flash"):
        self.api_key = api_key
        self.model_id = model_id
        self._client: genai.Client | None = None

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if not self.api_key:
                raise FailedPreconditionError("Server Gemini API key not configured")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def _config(self) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(thinking_config=types.ThinkingConfig(include_thoughts=True))

    async def count_tokens(self, action: str, payload: dict[str, Any]) -> int:
        result = await self.client.aio.models.count_tokens(model=self.model_id, contents=build_contents(action, payload))
        return result.total_tokens or 0

    async def generate(self, action: str, payload: dict[str, Any]) -> GenerationResult:
        response = await self.client.aio.models.generate_content(
            model=self.model_id,
            contents=build_contents(action, payload),
            config=self._config(),
        )
        text, thoughts = _split_parts(response)
        return GenerationResult(text=text, thoughts=thoughts or None, usage=usage_from_metadata(response.usage_metadata))

    async def stream(self, action: str, payload: dict[str, Any]) -> AsyncIterator[GenerationChunk]:
        usage = None
        async for chunk in await self.client.aio.models.generate_content_stream(
            model=self.model_id,
            contents=build_contents(action, payload),
            config=self._config(),
        ):
            usage = usage_from_metadata(chunk.usage_metadata) or usage
            text, thoughts = _split_parts(chunk)
            if thoughts:
                yield GenerationChunk(kind="thought", text=thoughts)
            if text:
                yield GenerationChunk(kind="output", text=text)
        if usage is None:
            log.warning("stream_usage_missing", action=action)
        yield GenerationChunk(kind="usage", usage=usage)
