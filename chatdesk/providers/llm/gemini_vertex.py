from __future__ import annotations

import logging
import time
from typing import Iterable

from chatdesk.core.config import get_settings
from chatdesk.core.errors import GenerationError, ProviderConfigError
from chatdesk.services.telemetry import record_external_call

logger = logging.getLogger(__name__)


class GeminiVertexProvider:
    def __init__(self, request_id: str | None = None) -> None:
        self._settings = get_settings()
        self._request_id = request_id

    def _split_messages(self, messages: list[dict]) -> tuple[str | None, str]:
        # Gemini takes system guidance separately from the transcript.
        system_parts: list[str] = []
        transcript: list[str] = []
        for msg in messages:
            role = msg.get("role", "user")
            content = msg.get("content", "")
            if role == "system":
                system_parts.append(content)
            else:
                transcript.append(f"{role.upper()}: {content}")
        system = "\n\n".join(system_parts) or None
        return system, "\n".join(transcript)

    def _validate_config(self) -> tuple[str, str, str]:
        # Fail fast to avoid confusing downstream SDK errors.
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        model = self._settings.gemini_model
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if not model:
            missing.append("GEMINI_MODEL")
        if missing:
            raise ProviderConfigError(f"Vertex config missing: set {', '.join(missing)} in .env.")
        return project, location, model

    def stream(self, messages: list[dict]) -> Iterable[str]:
        project, location, model_name = self._validate_config()
        timeout_s = max(1, int(self._settings.vertex_stream_timeout_s))

        try:
            from vertexai import init
            from vertexai.generative_models import GenerationConfig, GenerativeModel
            from google.auth.exceptions import DefaultCredentialsError, RefreshError
            from google.api_core.exceptions import PermissionDenied, Unauthenticated
        except ImportError as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Vertex AI SDK not available. Install the 'vertex' extra."
            ) from exc

        system, prompt = self._split_messages(messages)
        start = time.monotonic()
        success = False
        try:
            logger.info("vertex_stream_start request_id=%s model=%s", self._request_id, model_name)
            init(project=project, location=location)
            model = GenerativeModel(model_name, system_instruction=system)
            responses = model.generate_content(
                prompt,
                generation_config=GenerationConfig(
                    temperature=self._settings.llm_temperature,
                    max_output_tokens=self._settings.llm_max_tokens,
                ),
                stream=True,
            )
            deadline = time.monotonic() + timeout_s
            for response in responses:
                if time.monotonic() > deadline:
                    raise TimeoutError("Vertex stream timed out.")
                delta = getattr(response, "text", None)
                if delta:
                    yield delta
            success = True
        except (DefaultCredentialsError, RefreshError, PermissionDenied, Unauthenticated) as exc:
            logger.warning("vertex_stream_auth_error request_id=%s", self._request_id)
            raise ProviderConfigError(
                "Vertex auth error: run `gcloud auth application-default login`."
            ) from exc
        except TimeoutError:
            logger.warning("vertex_stream_timeout request_id=%s", self._request_id)
            raise
        except ProviderConfigError:
            raise
        except Exception as exc:
            logger.error("vertex_stream_error request_id=%s", self._request_id)
            raise GenerationError("Vertex AI request failed. Check credentials and model access.") from exc
        finally:
            record_external_call(
                integration="llm.vertex",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )
