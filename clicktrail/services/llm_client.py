#!/usr/bin/env python3
"""
LLM clients for structured app-usage extraction.

Two chat-completions backends share one request shape (a system message plus
one user message of interleaved text and image parts) and one decoding path:

- ``OpenAICompatibleClient``: AsyncOpenAI, schema enforced by the provider
  through ``response_format``.
- ``HFRouterClient``: plain HTTP with aiohttp against the HuggingFace router,
  schema requested through the system message only.

Either way the envelope is decoded first, then the message content must
parse as the requested pydantic model. No retries happen here.
"""

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type

import aiohttp
import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from ..config_manager import PROVIDER_HUGGINGFACE, PROVIDER_OPENAI, ConfigManager
from ..errors import ApiRequestFailed, MissingCredential, MissingModelSelection, ResponseDecodeFailure
from ..prompts.analysis import SYSTEM_PROMPT_JSON_ONLY, SYSTEM_PROMPT_SCHEMA
from ..schemas import APP_USAGE_JSON_SCHEMA, AppUsageAnalysis, get_schema

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]

OPENAI_BASE_URL = "https://api.openai.com/v1"
HF_ROUTER_URL = "https://router.huggingface.co/v1/chat/completions"


@dataclass
class ImageAttachment:
    data: bytes
    mime_type: str = "image/jpeg"

    def to_content_part(self) -> Dict[str, Any]:
        encoded = base64.b64encode(self.data).decode()
        return {
            "type": "image_url",
            "image_url": {"url": f"data:{self.mime_type};base64,{encoded}"},
        }


class _Message(BaseModel):
    content: Optional[str] = None


class _Choice(BaseModel):
    message: _Message


class ChatCompletionEnvelope(BaseModel):
    """The part of an OpenAI-style chat completion response we rely on."""

    choices: List[_Choice]


def extract_json_object(content: str) -> str:
    """Trim anything around the outermost JSON object (code fences, chatter)."""
    content = content.strip()
    start_idx = content.find("{")
    end_idx = content.rfind("}")
    if start_idx >= 0 and end_idx > start_idx:
        return content[start_idx : end_idx + 1]
    return content


class LLMClient(ABC):
    """Provider-agnostic ``complete(prompt, images, schema)`` contract."""

    provider: str = ""
    system_prompt: str = SYSTEM_PROMPT_SCHEMA

    def __init__(self, api_key: Optional[str], model: Optional[str], timeout: float = 120.0):
        if not api_key:
            raise MissingCredential()
        if not model:
            raise MissingModelSelection()
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def build_messages(self, prompt: str, images: Sequence[ImageAttachment]) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        content.extend(image.to_content_part() for image in images)
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": content},
        ]

    async def complete(
        self,
        prompt: str,
        images: Sequence[ImageAttachment] = (),
        schema: Type[BaseModel] = AppUsageAnalysis,
        json_schema: Optional[Dict[str, Any]] = None,
        log: Optional[LogCallback] = None,
    ) -> BaseModel:
        """Send one request and decode the structured result.

        Raises:
            ApiRequestFailed: non-2xx status or transport error.
            ResponseDecodeFailure: bad envelope, empty content, or content
                that does not validate against ``schema``.
        """
        content = await self.request(prompt, images, json_schema, log)
        return self.parse(content, schema, log)

    async def request(
        self,
        prompt: str,
        images: Sequence[ImageAttachment] = (),
        json_schema: Optional[Dict[str, Any]] = None,
        log: Optional[LogCallback] = None,
    ) -> str:
        """The HTTP half of :meth:`complete`: returns the assistant message text."""
        log = log or (lambda message: None)
        messages = self.build_messages(prompt, images)
        log(f"Total message parts (text + images): {len(messages[1]['content'])}")
        log(f"Making API request to {self.provider} (model: {self.model})...")

        content = await self._send(messages, json_schema or APP_USAGE_JSON_SCHEMA, log)

        log("LLM Response:")
        log(content)
        log("---")
        return content

    def parse(
        self,
        content: str,
        schema: Type[BaseModel] = AppUsageAnalysis,
        log: Optional[LogCallback] = None,
    ) -> BaseModel:
        """The decoding half of :meth:`complete`."""
        if log is not None:
            log("Decoding app usage data...")
        try:
            return schema.model_validate_json(extract_json_object(content))
        except ValidationError as exc:
            logger.error(f"{self.provider} content did not match {schema.__name__}: {exc}")
            raise ResponseDecodeFailure(
                f"Response content is not a valid {schema.__name__}: {exc.errors()[0]['msg']}",
                body=content,
            ) from exc

    @abstractmethod
    async def _send(self, messages: List[Dict[str, Any]], json_schema: Dict[str, Any], log: LogCallback) -> str:
        """Perform the HTTP round-trip and return the assistant message text."""

    @staticmethod
    def _decode_envelope(raw: str) -> str:
        try:
            envelope = ChatCompletionEnvelope.model_validate_json(raw)
        except ValidationError as exc:
            raise ResponseDecodeFailure(f"Malformed completion envelope: {exc.errors()[0]['msg']}", body=raw) from exc
        if not envelope.choices or envelope.choices[0].message.content is None:
            raise ResponseDecodeFailure("No content in response", body=raw)
        return envelope.choices[0].message.content


class OpenAICompatibleClient(LLMClient):
    """OpenAI chat completions with strict ``json_schema`` response format."""

    provider = "OpenAI"
    system_prompt = SYSTEM_PROMPT_SCHEMA

    def __init__(
        self,
        api_key: Optional[str],
        model: Optional[str],
        timeout: float = 120.0,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        super().__init__(api_key, model, timeout)
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or OPENAI_BASE_URL,
            timeout=timeout,
            max_retries=0,
        )

    async def _send(self, messages, json_schema, log) -> str:
        try:
            raw = await self.client.chat.completions.with_raw_response.create(
                model=self.model,
                messages=messages,
                response_format=get_schema(json_schema, name="app_usage_analysis"),
            )
        except openai.APIStatusError as exc:
            body = exc.response.text if exc.response is not None else None
            log(f"API Error: {body}")
            logger.error(f"OpenAI API error {exc.status_code}: {body}")
            raise ApiRequestFailed(
                f"OpenAI API error {exc.status_code}", status=exc.status_code, body=body
            ) from exc
        except openai.APIConnectionError as exc:
            log(f"ERROR: {exc}")
            raise ApiRequestFailed(f"OpenAI request failed: {exc}") from exc

        body = raw.text
        log(f"Response status: {raw.status_code}")
        log(f"Response size: {len(body.encode('utf-8'))} bytes")
        if not 200 <= raw.status_code < 300:
            raise ApiRequestFailed(f"OpenAI API error {raw.status_code}", status=raw.status_code, body=body)

        log("Parsing response...")
        return self._decode_envelope(body)


class HFRouterClient(LLMClient):
    """HuggingFace router (OpenAI-compatible wire format, no schema enforcement)."""

    provider = "HuggingFace"
    system_prompt = SYSTEM_PROMPT_JSON_ONLY

    def __init__(self, api_key: Optional[str], model: Optional[str], timeout: float = 120.0, api_url: str = HF_ROUTER_URL):
        super().__init__(api_key, model, timeout)
        self.api_url = api_url

    async def _post(self, headers: Dict[str, str], payload: Dict[str, Any]) -> Tuple[int, str]:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.api_url,
                headers=headers,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                return response.status, await response.text()

    async def _send(self, messages, json_schema, log) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": 4096,
            "stream": False,
        }
        log(f"Request URL: {self.api_url}")

        try:
            status, body = await self._post(headers, payload)
        except asyncio.TimeoutError as exc:
            log(f"ERROR: request timeout after {self.timeout}s")
            raise ApiRequestFailed(f"HuggingFace request timeout after {self.timeout}s") from exc
        except aiohttp.ClientError as exc:
            log(f"ERROR: {exc}")
            raise ApiRequestFailed(f"HuggingFace request failed: {exc}") from exc

        log(f"Response status: {status}")
        log(f"Response size: {len(body.encode('utf-8'))} bytes")
        if not 200 <= status < 300:
            log(f"API Error: {body}")
            logger.error(f"HuggingFace API error {status}: {body}")
            raise ApiRequestFailed(f"HuggingFace API error {status}", status=status, body=body)

        log("Parsing response...")
        return self._decode_envelope(body)


def create_llm_client(config: ConfigManager, timeout: Optional[float] = None) -> LLMClient:
    """Build the client for the configured provider, model and key."""
    provider = config.get_provider()
    api_key = config.get_api_key(provider)
    model = config.get_model(provider)
    if timeout is None:
        timeout = float(config.get_section("analysis").get("request_timeout", 120.0))

    if provider == PROVIDER_HUGGINGFACE:
        return HFRouterClient(api_key, model, timeout=timeout)
    if provider == PROVIDER_OPENAI:
        return OpenAICompatibleClient(api_key, model, timeout=timeout)
    raise ValueError(f"Unknown provider: {provider}")
