"""Output-schema descriptors for structured model generation.

Each result shape is a pydantic model from :mod:`schemas`. The registry turns it
into a JSON-schema string once and hands out the identical cached string on
every later request.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, Type

from pydantic import BaseModel

from engines.errors import SchemaError

logger = logging.getLogger(__name__)


def _inline_refs(node: Any, definitions: Dict[str, Any]) -> Any:
    """Resolve ``$ref`` pointers so the endpoint sees a self-contained schema."""

    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/$defs/"):
            name = ref.split("/")[-1]
            if name not in definitions:
                raise SchemaError(f"Unresolvable schema reference: {ref}")
            resolved = _inline_refs(definitions[name], definitions)
            extras = {k: v for k, v in node.items() if k != "$ref"}
            return {**resolved, **extras}
        return {k: _inline_refs(v, definitions) for k, v in node.items() if k != "$defs"}
    if isinstance(node, list):
        return [_inline_refs(item, definitions) for item in node]
    return node


def derive_schema(result_type: Type[BaseModel]) -> str:
    if not isinstance(result_type, type) or not issubclass(result_type, BaseModel):
        raise SchemaError(f"Cannot derive an output schema for {result_type!r}")
    try:
        raw = result_type.model_json_schema()
    except Exception as exc:
        raise SchemaError(f"Failed to generate JSON schema for {result_type.__name__}") from exc
    schema = _inline_refs(raw, raw.get("$defs", {}))
    schema.pop("title", None)
    return json.dumps(schema, sort_keys=True, ensure_ascii=False)


class SchemaRegistry:
    """Thread-safe memo of JSON-schema strings keyed by result type."""

    def __init__(self) -> None:
        self._cache: Dict[Type[BaseModel], str] = {}
        self._lock = threading.Lock()
        self.computations = 0

    def schema_for(self, result_type: Type[BaseModel]) -> str:
        cached = self._cache.get(result_type)
        if cached is not None:
            return cached
        with self._lock:
            cached = self._cache.get(result_type)
            if cached is None:
                cached = derive_schema(result_type)
                self._cache[result_type] = cached
                self.computations += 1
                logger.debug("Derived output schema for %s", result_type.__name__)
        return cached

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


_default_registry = SchemaRegistry()


def schema_for(result_type: Type[BaseModel]) -> str:
    """Schema string for ``result_type`` from the process-wide registry."""
    return _default_registry.schema_for(result_type)


def default_registry() -> SchemaRegistry:
    return _default_registry
