"""Error taxonomy shared by the prompt pipeline and the tutor features.

Two families matter to callers:

* configuration errors (:class:`TemplateError`, :class:`SchemaError`) signal a
  programming mistake and always propagate;
* model errors (:class:`TransportError`, :class:`ModelError`,
  :class:`ParseError`) are expected at runtime and are absorbed by the
  query orchestrator, which hands back the caller's fallback value instead.
"""

from __future__ import annotations


class TutorError(Exception):
    """Base class for all tutor pipeline errors."""


class TemplateError(TutorError):
    """Raised when a prompt template cannot be loaded or filled."""


class TemplateNotFoundError(TemplateError):
    """Raised when a named template file does not exist."""


class MissingPlaceholderError(TemplateError):
    """Raised when an argument has no matching ``{{name}}`` in the template."""

    def __init__(self, argument_name: str):
        super().__init__(f"No placeholder '{{{{{argument_name}}}}}' in this prompt template")
        self.argument_name = argument_name


class SchemaError(TutorError):
    """Raised when no output schema can be derived for a result type."""


class LanguageModelError(TutorError):
    """Base class for recoverable failures of a model round trip."""


class TransportError(LanguageModelError):
    """Connection, timeout or HTTP failure talking to the model endpoint."""


class ModelError(LanguageModelError):
    """The endpoint answered but reported an error in its envelope."""


class ParseError(LanguageModelError):
    """The generated text does not match the requested result shape."""


class ProviderError(TutorError):
    """Raised by upstream content or semantic-search providers."""


__all__ = [
    "TutorError",
    "TemplateError",
    "TemplateNotFoundError",
    "MissingPlaceholderError",
    "SchemaError",
    "LanguageModelError",
    "TransportError",
    "ModelError",
    "ParseError",
    "ProviderError",
]
