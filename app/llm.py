from __future__ import annotations
from typing import Any, AsyncGenerator, Dict, List, Optional
import json
import logging

import httpx

from .config import Settings

log = logging.getLogger(__name__)


class LLMAdapter:
    """
    Dünner Client für ein OpenAI-kompatibles Backend.
    - stream_chat: rohe Chunks aus /chat/completions (SSE, "data: {...}")
    - stream_text: nur die Text-Deltas eines System+Prompt-Aufrufs
    - complete:    nicht-streamender Aufruf (z.B. Titel)
    - generate_image: /images/generations, Base64
    """

    def __init__(self, _settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = _settings
        self.client: Optional[httpx.AsyncClient] = client

    async def startup(self) -> None:
        if self.client is None:
            limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
            self.client = httpx.AsyncClient(
                base_url=self._settings.LLM_BASE_URL.rstrip("/"),
                timeout=httpx.Timeout(120.0),
                http2=True,
                limits=limits,
                headers={
                    "Authorization": f"Bearer {self._settings.LLM_API_KEY}",
                    "Content-Type": "application/json",
                },
            )

    async def shutdown(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    async def stream_chat(
        self,
        messages: List[Dict],
        model: str,
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: Optional[float] = None,
        response_format: Optional[Dict[str, Any]] = None,
        prediction: Optional[Dict[str, Any]] = None,
    ) -> AsyncGenerator[Dict[str, Any], None]:
        await self.startup()
        assert self.client
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self._settings.TEMPERATURE if temperature is None else temperature,
            "stream": True,
        }
        if tools:
            payload["tools"] = tools
        if response_format:
            payload["response_format"] = response_format
        if prediction:
            payload["prediction"] = prediction

        async with self.client.stream("POST", "/chat/completions", json=payload) as r:
            r.raise_for_status()
            async for line in r.aiter_lines():
                if not line or not line.startswith("data:"):
                    continue
                chunk = line.removeprefix("data:").strip()
                if chunk == "[DONE]":
                    break
                try:
                    yield json.loads(chunk)
                except ValueError:
                    log.warning("Skipping malformed stream chunk: %r", chunk[:200])

    async def stream_text(
        self,
        system: str,
        prompt: str,
        model: str,
        response_format: Optional[Dict[str, Any]] = None,
        prediction: Optional[Dict[str, Any]] = None,
    ) -> AsyncGenerator[str, None]:
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]
        async for chunk in self.stream_chat(
            messages, model=model, response_format=response_format, prediction=prediction
        ):
            choices = chunk.get("choices") or []
            if not choices:
                continue
            text = (choices[0].get("delta") or {}).get("content")
            if text:
                yield text

    async def complete(self, messages: List[Dict], model: str, temperature: Optional[float] = None) -> str:
        await self.startup()
        assert self.client
        payload = {
            "model": model,
            "messages": messages,
            "temperature": self._settings.TEMPERATURE if temperature is None else temperature,
            "stream": False,
        }
        r = await self.client.post("/chat/completions", json=payload)
        r.raise_for_status()
        choices = r.json().get("choices") or []
        if not choices:
            return ""
        return ((choices[0].get("message") or {}).get("content") or "").strip()

    async def generate_image(self, prompt: str) -> str:
        await self.startup()
        assert self.client
        payload = {
            "model": self._settings.IMAGE_MODEL,
            "prompt": prompt,
            "n": 1,
            "response_format": "b64_json",
        }
        r = await self.client.post("/images/generations", json=payload)
        r.raise_for_status()
        data = r.json().get("data") or []
        if not data or not data[0].get("b64_json"):
            raise ValueError("Image generation returned no image")
        return data[0]["b64_json"]
