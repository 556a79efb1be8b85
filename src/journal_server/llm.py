"""Inference collaborators: a remote chat-completions endpoint or a local GGUF model.

Both expose ``await client.run(messages)`` taking ``[{"role", "content"}, ...]``
and returning whatever the backend produced. Turning that into reply text is
:func:`extract_reply`'s job, so a backend changing its response shape degrades
to the fallback reply instead of failing the turn.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

Messages = List[Dict[str, str]]

DEFAULT_REPLY = "I'm here and listening."


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class GenerationConfig:
    max_tokens: int = 256
    temperature: float = 0.7


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def extract_reply(resp: Any, default: str = DEFAULT_REPLY) -> str:
    """Pull reply text out of an inference response.

    Tried in order: ``response``, ``result`` (a string, or an object holding
    ``response``), ``choices[0].message.content``, ``choices[0].text``, and a
    bare string. Falls back to ``default`` when none yields non-blank text.
    """
    if isinstance(resp, dict):
        found = _text(resp.get("response"))
        if found:
            return found

        result = resp.get("result")
        found = _text(result)
        if found:
            return found
        if isinstance(result, dict):
            found = _text(result.get("response"))
            if found:
                return found

        choices = resp.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            first = choices[0]
            message = first.get("message")
            if isinstance(message, dict):
                found = _text(message.get("content"))
                if found:
                    return found
            found = _text(first.get("text"))
            if found:
                return found
    else:
        found = _text(resp)
        if found:
            return found

    logger.warning("Unrecognized inference response (%s); using fallback reply.", type(resp).__name__)
    return default


# -----------------------------
# Clients
# -----------------------------

class InferenceClient:
    """Base class for inference collaborators."""

    async def run(self, messages: Messages) -> Any:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HTTPInferenceClient(InferenceClient):
    """Calls a remote chat endpoint with :mod:`httpx`.

    ``api_style="openai"`` posts to ``<url>/chat/completions`` with a
    ``model`` field; ``api_style="workers_ai"`` posts to ``<url>/run/<model>``.
    """

    def __init__(
        self,
        url: str,
        model: str,
        *,
        api_key: Optional[str] = None,
        api_style: str = "openai",
        timeout: float = 60.0,
        generation: Optional[GenerationConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if api_style not in {"openai", "workers_ai"}:
            raise ValueError(f"Unknown api_style: {api_style!r}")
        self.url = url.rstrip("/")
        self.model = model
        self.api_style = api_style
        self.generation = generation or GenerationConfig()
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    def _request(self, messages: Messages) -> tuple[str, Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "messages": messages,
            "max_tokens": self.generation.max_tokens,
            "temperature": self.generation.temperature,
        }
        if self.api_style == "workers_ai":
            return f"{self.url}/run/{self.model}", payload
        payload["model"] = self.model
        return f"{self.url}/chat/completions", payload

    async def run(self, messages: Messages) -> Any:
        endpoint, payload = self._request(messages)
        resp = await self._client.post(endpoint, json=payload, headers=self._headers)
        resp.raise_for_status()
        return resp.json()

    async def aclose(self) -> None:
        await self._client.aclose()


class GGUFInferenceClient(InferenceClient):
    """Local llama.cpp model via :mod:`llama_cpp` chat completions."""

    def __init__(self, model_path: str, *, generation: Optional[GenerationConfig] = None, **kwargs: Any) -> None:
        """Load ``model_path``; extra ``kwargs`` go to ``llama_cpp.Llama``."""
        # Lazy import so the HTTP backend works without the dep.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1

        if kwargs.get("n_gpu_layers") is None:
            kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0

        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap
        kwargs.setdefault("verbose", False)

        try:
            self._llama = Llama(model_path=model_path, **kwargs)
        except OSError:
            if not use_mmap:
                raise
            # Retry without mmap on network filesystems / Windows oddities.
            kwargs["use_mmap"] = False
            self._llama = Llama(model_path=model_path, **kwargs)

        self.generation = generation or GenerationConfig()
        # llama.cpp contexts are not safe to share across threads.
        self._lock = threading.Lock()

    def _complete(self, messages: Messages) -> Any:
        with self._lock:
            return self._llama.create_chat_completion(
                messages=messages,
                max_tokens=self.generation.max_tokens,
                temperature=self.generation.temperature,
            )

    async def run(self, messages: Messages) -> Any:
        return await asyncio.to_thread(self._complete, messages)


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> InferenceClient:
    """Create an inference client from the ``inference`` config section."""
    inf_cfg = (cfg or {}).get("inference", {}) if isinstance(cfg, dict) else {}
    generation = GenerationConfig(
        max_tokens=int(inf_cfg.get("max_tokens", 256)),
        temperature=float(inf_cfg.get("temperature", 0.7)),
    )
    backend = str(inf_cfg.get("backend", "http")).lower()

    if backend == "gguf":
        model_path = inf_cfg.get("model_path")
        if not model_path or not os.path.exists(model_path):
            raise FileNotFoundError(f"Model not found at: {model_path!r}")
        params = {
            "n_ctx": inf_cfg.get("n_ctx", 4096),
            "n_threads": inf_cfg.get("n_threads"),
            "n_gpu_layers": inf_cfg.get("n_gpu_layers"),
            "use_mmap": inf_cfg.get("use_mmap", True),
        }
        # Remove None entries (llama.cpp is picky)
        params = {k: v for k, v in params.items() if v is not None}
        return GGUFInferenceClient(str(model_path), generation=generation, **params)

    if backend == "http":
        url = inf_cfg.get("url")
        if not url:
            raise ValueError("inference.url is required for the http backend")
        return HTTPInferenceClient(
            str(url),
            str(inf_cfg.get("model", "")),
            api_key=inf_cfg.get("api_key") or os.environ.get("INFERENCE_API_KEY"),
            api_style=str(inf_cfg.get("api_style", "openai")),
            timeout=float(inf_cfg.get("timeout", 60.0)),
            generation=generation,
        )

    raise ValueError(f"Unknown inference backend: {backend!r}")
