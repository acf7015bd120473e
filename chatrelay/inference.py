"""
Inference capability: conversation context in, reply text out.

The dispatcher only depends on the ``InferenceBackend`` protocol. The
production backend calls Azure OpenAI chat completions over HTTP; the echo
backend is used when no endpoint is configured.
"""

import logging
import time
from typing import List, Optional, Protocol

import httpx

from chatrelay.engine import ContextEntry
from chatrelay.errors import InferenceError
from chatrelay.metrics import record_inference

logger = logging.getLogger(__name__)


class InferenceBackend(Protocol):
    async def complete(self, context: List[ContextEntry]) -> str: ...


def describe_payload(msg_type: str, payload: dict) -> str:
    """Plain-text rendering of a non-text message for the model."""
    payload = payload or {}
    if msg_type == "text":
        return payload.get("content") or ""
    if msg_type == "link":
        parts = [payload.get("title"), payload.get("description"), payload.get("url")]
        return "[link] " + " - ".join(p for p in parts if p)
    if msg_type == "location":
        label = payload.get("label") or ""
        return f"[location] {label} ({payload.get('latitude')}, {payload.get('longitude')})".strip()
    if msg_type == "voice" and payload.get("recognition"):
        return payload["recognition"]
    return f"[{msg_type}]"


def build_chat_messages(
    context: List[ContextEntry],
    system_prompt: str,
    image_prompt: str,
) -> List[dict]:
    """
    Convert chronological context into chat-completion messages.

    Image messages carrying a picture URL become image_url parts so the
    model can look at them; everything else is sent as text.
    """
    messages = [{"role": "system", "content": system_prompt}]
    for entry in context:
        user_type = entry.user.get("type", "text")
        user_payload = entry.user.get("payload") or {}
        if user_type == "image" and user_payload.get("pic_url"):
            content = [
                {"type": "text", "text": image_prompt},
                {"type": "image_url", "image_url": {"url": user_payload["pic_url"]}},
            ]
        else:
            content = [{"type": "text", "text": describe_payload(user_type, user_payload)}]
        messages.append({"role": "user", "content": content})

        for reply in entry.agent:
            text = describe_payload(reply.get("type", "text"), reply.get("payload") or {})
            if text:
                messages.append({"role": "assistant", "content": text})
    return messages


class AzureChatBackend:
    """Azure OpenAI chat completions provider."""

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        model: str = "gpt-4.1-mini",
        api_version: str = "2025-01-01-preview",
        system_prompt: str = "",
        image_prompt: str = "",
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not endpoint.strip():
            raise ValueError("endpoint must not be empty")
        if not api_key.strip():
            raise ValueError("api_key must not be empty")
        self.endpoint = endpoint.strip().rstrip("/")
        self.api_key = api_key.strip()
        self.model = model
        self.api_version = api_version
        self.system_prompt = system_prompt
        self.image_prompt = image_prompt
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def url(self) -> str:
        return (
            f"{self.endpoint}/openai/deployments/{self.model}/chat/completions"
            f"?api-version={self.api_version}"
        )

    async def complete(self, context: List[ContextEntry]) -> str:
        messages = build_chat_messages(context, self.system_prompt, self.image_prompt)
        payload = {
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": False,
        }
        logger.debug(f"Inference request: model={self.model}, messages_count={len(messages)}")

        start = time.time()
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    headers={
                        "Content-Type": "application/json",
                        "api-key": self.api_key,
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            record_inference(time.time() - start, ok=False)
            logger.error(f"Inference transport error: {e}")
            raise InferenceError(f"inference request failed: {e}") from e

        if response.status_code != 200:
            record_inference(time.time() - start, ok=False)
            logger.error(f"Inference error {response.status_code}: {response.text}")
            raise InferenceError(
                f"inference error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            content = ""
            if data.get("choices"):
                content = (data["choices"][0].get("message") or {}).get("content") or ""
            if not isinstance(content, str):
                raise TypeError(f"content is {type(content).__name__}, not text")
        except (ValueError, AttributeError, TypeError, IndexError) as e:
            record_inference(time.time() - start, ok=False)
            logger.error(f"Malformed inference response: {response.text[:200]}")
            raise InferenceError(f"malformed inference response: {e}", status_code=response.status_code) from e

        record_inference(time.time() - start, ok=True)
        logger.debug(f"Inference content: {content[:100] if content else 'EMPTY'}")
        return content


class EchoBackend:
    """Offline backend that answers with the text of the latest message."""

    async def complete(self, context: List[ContextEntry]) -> str:
        if not context:
            return ""
        latest = context[-1].user
        return describe_payload(latest.get("type", "text"), latest.get("payload") or {})
