"""Request/response exchange with a locally hosted Ollama endpoint."""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Optional, Union
from uuid import uuid4

import requests
from pydantic import ValidationError

from env_validation import get_env_optional_float
from engines.errors import ModelError, TransportError
from schemas import OllamaRequest, OllamaResponse

logger = logging.getLogger(__name__)
_LLM_LOGGER = logging.getLogger("tutor.llm")

DEFAULT_MODEL = "llama3:8b-instruct-q4_0"
GENERATE_ENDPOINT = "api/generate"


def _format_field(schema: Optional[str]) -> Union[dict[str, Any], str]:
    """Ollama takes a JSON-schema object for ``format``; plain ``"json"`` otherwise."""
    if not schema:
        return "json"
    try:
        parsed = json.loads(schema)
    except ValueError:
        return "json"
    return parsed if isinstance(parsed, dict) else "json"


class OllamaGateway:
    """Sends one non-streaming generate request per call. Never retries."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("OLLAMA_URL") or "http://localhost:11434").rstrip("/")
        self.model = model or os.getenv("OLLAMA_MODEL") or DEFAULT_MODEL
        # None means wait for as long as the model needs.
        self.timeout = timeout if timeout is not None else get_env_optional_float("LLM_TIMEOUT")

    @property
    def url(self) -> str:
        return f"{self.base_url}/{GENERATE_ENDPOINT}"

    def build_request(self, prompt: str, schema: Optional[str]) -> OllamaRequest:
        return OllamaRequest(model=self.model, prompt=prompt, stream=False, format=_format_field(schema))

    def generate(self, prompt: str, schema: Optional[str] = None, *, request_id: Optional[str] = None) -> OllamaResponse:
        """Return the parsed envelope or raise ``TransportError``/``ModelError``."""
        payload = self.build_request(prompt, schema).model_dump(exclude_none=True)
        call_request_id = request_id or str(uuid4())
        start = time.perf_counter()
        outcome = "ok"
        envelope: Optional[OllamaResponse] = None
        try:
            try:
                r = requests.post(self.url, json=payload, timeout=self.timeout)
                r.raise_for_status()
                data = r.json()
            except requests.HTTPError as e:
                outcome = "transport_error"
                status = e.response.status_code if e.response is not None else "?"
                body = e.response.text[:300] if e.response is not None else ""
                raise TransportError(f"LLM-HTTP {status}: {body}") from e
            except requests.RequestException as e:
                outcome = "transport_error"
                raise TransportError(f"LLM transport error: {e}") from e
            except ValueError as e:
                outcome = "transport_error"
                raise TransportError(f"LLM returned a non-JSON body: {e}") from e

            try:
                envelope = OllamaResponse.model_validate(data)
            except ValidationError as e:
                outcome = "transport_error"
                raise TransportError(f"Unexpected LLM response: {str(data)[:300]}") from e

            if envelope.error is not None:
                outcome = "model_error"
                raise ModelError(f"Ollama returned error: {envelope.error}")
            return envelope
        finally:
            latency_ms = int((time.perf_counter() - start) * 1000)
            log_record = {
                "event": "llm_call",
                "request_id": call_request_id,
                "model": self.model,
                "latency_ms": latency_ms,
                "outcome": outcome,
                "done": envelope.done if envelope else None,
                "prompt_eval_count": envelope.prompt_eval_count if envelope else None,
                "eval_count": envelope.eval_count if envelope else None,
            }
            _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))
