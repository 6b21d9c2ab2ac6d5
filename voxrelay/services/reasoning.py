"""
Reasoning service client and conversation history.

Voice requests are answered through the gateway's OpenAI-compatible chat
completions endpoint. Conversation history is kept in an explicit store
that the orchestrator owns and passes into every call.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Optional, Protocol

import httpx

logger = logging.getLogger("voxrelay.services.reasoning")


class ReasoningError(Exception):
    """Raised when the reasoning service cannot produce an answer."""

    pass


class ConversationHistory:
    """Recent user/assistant turns per conversation key, oldest dropped first."""

    def __init__(self, max_messages: int = 20):
        self._max_messages = max_messages
        self._messages: dict[str, list[dict[str, str]]] = defaultdict(list)

    def get(self, key: str) -> list[dict[str, str]]:
        return list(self._messages.get(key, []))

    def append(self, key: str, role: str, content: str) -> None:
        messages = self._messages[key]
        messages.append({"role": role, "content": content})
        if len(messages) > self._max_messages:
            del messages[: len(messages) - self._max_messages]

    def clear(self, key: Optional[str] = None) -> None:
        if key is None:
            self._messages.clear()
        else:
            self._messages.pop(key, None)

    def __len__(self) -> int:
        return len(self._messages)


class Responder(Protocol):
    """Anything that can answer a voice request."""

    async def respond(self, key: str, text: str, history: ConversationHistory) -> str:
        ...


class ReasoningClient:
    """Chat completions client for the gateway agent."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        model: str = "openclaw:main",
        max_tokens: int = 300,
        system_prompt: str = "",
        timeout: float = 60.0,
        retries: int = 2,
        retry_backoff: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self._token = token
        self._timeout = timeout
        self._retries = retries
        self._retry_backoff = retry_backoff
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, gateway_config, reasoning_config, **kwargs) -> "ReasoningClient":
        return cls(
            gateway_config.url,
            gateway_config.token,
            model=reasoning_config.model or f"openclaw:{gateway_config.agent_id}",
            max_tokens=reasoning_config.max_tokens,
            system_prompt=reasoning_config.system_prompt,
            timeout=reasoning_config.timeout,
            retries=reasoning_config.retries,
            retry_backoff=reasoning_config.retry_backoff,
            **kwargs,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def respond(self, key: str, text: str, history: ConversationHistory) -> str:
        """
        Answer ``text`` in the conversation ``key``.

        History is updated only when an answer comes back.

        Raises:
            ReasoningError: HTTP failure, connection failure after retries,
                or a reply without content
        """
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend(history.get(key))
        messages.append({"role": "user", "content": text})

        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": messages,
            "user": key,
        }
        data = await self._post(payload)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ReasoningError("Reply had no message content") from None
        if not isinstance(content, str) or not content.strip():
            raise ReasoningError("Reply had no message content")
        content = content.strip()

        history.append(key, "user", text)
        history.append(key, "assistant", content)
        logger.info("Reasoning reply for %s: %d chars", key, len(content))
        return content

    async def _post(self, payload: dict) -> dict:
        client = self._get_client()
        url = f"{self.base_url}/v1/chat/completions"
        attempt = 0
        while True:
            try:
                response = await client.post(url, json=payload, headers=self._headers())
                response.raise_for_status()
                return response.json()
            except httpx.TransportError as e:
                if attempt >= self._retries:
                    logger.error("Reasoning request failed after %d retries: %s", attempt, e)
                    raise ReasoningError(f"Connection failed: {e}") from e
                attempt += 1
                logger.warning("Reasoning connection failed (%s), retry %d/%d", e, attempt, self._retries)
                await asyncio.sleep(self._retry_backoff)
            except httpx.HTTPStatusError as e:
                logger.error("Reasoning request rejected: %s", e)
                raise ReasoningError(f"HTTP {e.response.status_code}") from e
            except ValueError as e:
                raise ReasoningError(f"Invalid JSON reply: {e}") from e
