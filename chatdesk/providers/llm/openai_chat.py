from __future__ import annotations

import json
import logging
import time
from typing import Iterable

import httpx

from chatdesk.core.config import get_settings
from chatdesk.core.errors import GenerationError, ProviderConfigError
from chatdesk.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_DATA_PREFIX = "data:"


class OpenAIChatProvider:
    def __init__(self, request_id: str | None = None, client: httpx.Client | None = None) -> None:
        self._settings = get_settings()
        self._request_id = request_id
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.Client(timeout=timeout_s)
        return self._client

    def stream(self, messages: list[dict]) -> Iterable[str]:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for the OpenAI chat provider")

        payload = {
            "model": self._settings.openai_chat_model,
            "messages": messages,
            "temperature": self._settings.llm_temperature,
            "max_tokens": self._settings.llm_max_tokens,
            "stream": True,
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"
        start = time.monotonic()
        success = False
        try:
            with self._get_client().stream("POST", url, json=payload, headers=headers) as response:
                if response.status_code in {401, 403}:
                    raise ProviderConfigError("OpenAI auth error: check OPENAI_API_KEY.")
                if response.status_code >= 400:
                    response.read()
                    logger.warning(
                        "openai_chat_http_error request_id=%s status=%s",
                        self._request_id,
                        response.status_code,
                    )
                    # Expose the status so the retry policy can treat 5xx as transient.
                    raise GenerationError(
                        f"OpenAI chat error: {response.status_code}",
                        upstream_status=response.status_code,
                    )
                for line in response.iter_lines():
                    if not line.startswith(_DATA_PREFIX):
                        continue
                    data = line[len(_DATA_PREFIX):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except ValueError:
                        continue
                    choices = event.get("choices") or []
                    if not choices:
                        continue
                    delta = (choices[0].get("delta") or {}).get("content")
                    if delta:
                        yield delta
            success = True
        except httpx.HTTPError as exc:
            logger.warning("openai_chat_transport_error request_id=%s", self._request_id)
            raise GenerationError("OpenAI chat request failed.") from exc
        finally:
            record_external_call(
                integration="llm.openai",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )
