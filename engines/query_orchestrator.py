"""Typed, fail-soft questions to the language model.

``ask`` fills a prompt template, requests structured output matching a
pydantic result type and returns the parsed value. The model is an external
dependency that times out, errors and emits malformed JSON now and then, so
every failure of the round trip or of parsing yields the caller's fallback.
Template and schema problems are programming errors and are raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Iterable, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from engines.errors import LanguageModelError, ModelError, ParseError, TransportError
from engines.ollama_gateway import OllamaGateway
from engines.schema_registry import SchemaRegistry, default_registry
from prompts import ArgLike, fill_template
from schemas import parse_json_safe

logger = logging.getLogger(__name__)

_T = TypeVar("_T", bound=BaseModel)


class QueryStatus(str, Enum):
    OK = "ok"
    TRANSPORT_ERROR = "transport_error"
    MODEL_ERROR = "model_error"
    PARSE_ERROR = "parse_error"


@dataclass(frozen=True)
class QueryOutcome(Generic[_T]):
    """Result of one orchestrated query and which path produced it."""

    value: _T
    status: QueryStatus
    error: Optional[LanguageModelError] = None

    @property
    def used_fallback(self) -> bool:
        return self.status is not QueryStatus.OK


def parse_generated(text: Optional[str], result_type: Type[_T]) -> _T:
    if text is None or not text.strip():
        raise ParseError("Model returned no text")
    try:
        return parse_json_safe(text, result_type)
    except (ValidationError, ValueError) as exc:
        raise ParseError(f"Model output does not match {result_type.__name__}: {exc}") from exc


class QueryOrchestrator:
    def __init__(
        self,
        gateway: Optional[OllamaGateway] = None,
        registry: Optional[SchemaRegistry] = None,
    ) -> None:
        self.gateway = gateway or OllamaGateway()
        self.registry = registry or default_registry()

    def run(
        self,
        result_type: Type[_T],
        template: str,
        args: Iterable[ArgLike],
        fallback: _T,
    ) -> QueryOutcome[_T]:
        prompt = fill_template(template, args)
        schema = self.registry.schema_for(result_type)

        try:
            envelope = self.gateway.generate(prompt, schema)
            value = parse_generated(envelope.response, result_type)
        except TransportError as exc:
            logger.warning("LLM unreachable, using fallback for %s: %s", result_type.__name__, exc)
            return QueryOutcome(fallback, QueryStatus.TRANSPORT_ERROR, exc)
        except ModelError as exc:
            logger.warning("LLM reported an error, using fallback for %s: %s", result_type.__name__, exc)
            return QueryOutcome(fallback, QueryStatus.MODEL_ERROR, exc)
        except ParseError as exc:
            logger.warning("Unparseable LLM output, using fallback for %s: %s", result_type.__name__, exc)
            return QueryOutcome(fallback, QueryStatus.PARSE_ERROR, exc)
        return QueryOutcome(value, QueryStatus.OK)

    def ask(
        self,
        result_type: Type[_T],
        template: str,
        args: Iterable[ArgLike],
        fallback: _T,
    ) -> _T:
        return self.run(result_type, template, args, fallback).value
