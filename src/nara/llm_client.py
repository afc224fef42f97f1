#!/usr/bin/env python3
"""
Nara language model client

Talks to an OpenAI-compatible /v1/chat/completions endpoint (llama.cpp server,
vLLM, hosted gateways). Streaming responses are read line by line so a
cancelled interaction closes the connection mid-answer.
"""
import json
from typing import Dict, List, Optional

import requests

from . import config as CFG
from .error_handler import InteractionAborted, ServiceError, ServiceTimeout
from .interactions import CancelToken
from .logging_utils import setup_logger

logger = setup_logger("nara.llm_client", "logs/llm_client.log")

_READ_ERRORS = (requests.exceptions.RequestException, OSError, ValueError, AttributeError)


class LLMClient:
    """Minimal chat-completions client with timeouts and cancellation"""

    def __init__(self, server_url: str, model: str = "local", api_key: Optional[str] = None,
                 temperature: float = 0.3, max_tokens: int = 1024, timeout: float = 30.0,
                 connect_timeout: float = 5.0, stream: bool = True,
                 session: Optional[requests.Session] = None):
        self.server_url = server_url
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.connect_timeout = min(connect_timeout, timeout)
        self.stream = stream
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls) -> "LLMClient":
        return cls(
            server_url=CFG.get_llm_server_url(),
            model=CFG.get_llm_model(),
            api_key=CFG.get_llm_api_key(),
            temperature=CFG.get_llm_temperature(),
            max_tokens=CFG.get_llm_max_tokens(),
            timeout=CFG.get_llm_timeout(),
            stream=CFG.get_llm_stream(),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def complete(self, system: str, messages: List[Dict[str, str]], cancel: Optional[CancelToken] = None,
                 max_tokens: Optional[int] = None, temperature: Optional[float] = None) -> str:
        """Return the model's full reply text"""
        if cancel is not None:
            cancel.raise_if_cancelled("llm", "complete")

        payload = {
            "model": self.model,
            "messages": [{"role": "system", "content": system}] + list(messages),
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": self.max_tokens if max_tokens is None else max_tokens,
            "stream": self.stream,
        }

        try:
            response = self.session.post(
                self.server_url,
                json=payload,
                headers=self._headers(),
                stream=self.stream,
                timeout=(self.connect_timeout, self.timeout),
            )
        except requests.exceptions.Timeout as e:
            raise ServiceTimeout(f"Language model timed out after {self.timeout}s",
                                 component="llm", operation="complete") from e
        except requests.exceptions.RequestException as e:
            self._raise_if_cancelled(cancel, e)
            raise ServiceError(f"Language model request failed: {e}", component="llm", operation="complete") from e

        unregister = cancel.add_callback(response.close) if cancel is not None else None
        try:
            with response:
                if response.status_code >= 400:
                    raise ServiceError(
                        f"Language model error {response.status_code}: {response.text[:200]}",
                        component="llm", operation="complete", status=response.status_code,
                    )
                content_type = response.headers.get("Content-Type", "")
                if self.stream and "text/event-stream" in content_type:
                    text = self._read_stream(response, cancel)
                else:
                    text = self._read_json(response)
        except requests.exceptions.Timeout as e:
            self._raise_if_cancelled(cancel, e)
            raise ServiceTimeout(f"Language model stalled for more than {self.timeout}s",
                                 component="llm", operation="complete") from e
        except _READ_ERRORS as e:
            self._raise_if_cancelled(cancel, e)
            raise ServiceError(f"Language model response failed: {e}", component="llm", operation="complete") from e
        finally:
            if unregister is not None:
                unregister()

        if cancel is not None:
            cancel.raise_if_cancelled("llm", "complete")
        if not text.strip():
            raise ServiceError("Language model returned an empty reply", component="llm", operation="complete")
        logger.info(f"llm_reply len={len(text)} preview={text[:80]!r}")
        return text

    @staticmethod
    def _raise_if_cancelled(cancel: Optional[CancelToken], cause: BaseException) -> None:
        if cancel is not None and cancel.cancelled:
            raise InteractionAborted(f"Language model call cancelled: {cancel.reason}",
                                     component="llm", operation="complete") from cause

    def _read_stream(self, response, cancel: Optional[CancelToken]) -> str:
        parts: List[str] = []
        for line in response.iter_lines(decode_unicode=True):
            if cancel is not None and cancel.cancelled:
                break
            if not line or not line.startswith("data:"):
                continue
            data = line[5:].strip()
            if data == "[DONE]":
                break
            try:
                choice = json.loads(data)["choices"][0]
            except (ValueError, KeyError, IndexError, TypeError):
                logger.debug(f"Skipping malformed stream chunk: {data[:80]!r}")
                continue
            delta = (choice.get("delta") or {}).get("content") or (choice.get("message") or {}).get("content")
            if delta:
                parts.append(delta)
        return "".join(parts)

    @staticmethod
    def _read_json(response) -> str:
        try:
            data = response.json()
            return data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ServiceError(f"Unexpected language model response format: {e}",
                               component="llm", operation="complete") from e

    def health_url(self) -> str:
        base = self.server_url.split("/v1/")[0] if "/v1/" in self.server_url else self.server_url.rstrip("/")
        return base + "/health"

    def check_health(self, timeout: float = 2.0) -> bool:
        try:
            response = self.session.get(self.health_url(), timeout=timeout)
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            logger.warning(f"LLM service health check failed: {e}")
            return False

    def close(self) -> None:
        self.session.close()


__all__ = ["LLMClient"]
