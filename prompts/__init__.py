"""Prompt templates for the tutor and the placeholder filling used on them.

Templates live in ``prompts/templates`` and use ``{{name}}`` placeholders.
Filling is plain sequential text replacement: each argument is substituted in
the order supplied, so a value that itself contains ``{{later_name}}`` is
substituted again when ``later_name`` comes up.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Tuple, Union

from engines.errors import MissingPlaceholderError, TemplateNotFoundError

_TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"


@dataclass(frozen=True)
class TemplateArg:
    """One ``{{name}}`` -> value substitution."""

    name: str
    value: str

    @property
    def placeholder(self) -> str:
        return "{{" + self.name + "}}"


ArgLike = Union[TemplateArg, Tuple[str, str]]


def _coerce(arg: ArgLike) -> TemplateArg:
    if isinstance(arg, TemplateArg):
        return arg
    name, value = arg
    return TemplateArg(str(name), str(value))


def fill_template(template: str, args: Iterable[ArgLike]) -> str:
    """Replace every argument's placeholder in ``template``.

    Raises :class:`MissingPlaceholderError` when an argument's placeholder does
    not occur in the unfilled template.
    """
    filled = template
    for raw in args:
        arg = _coerce(raw)
        if arg.placeholder not in template:
            raise MissingPlaceholderError(arg.name)
        filled = filled.replace(arg.placeholder, arg.value)
    return filled


@lru_cache(maxsize=None)
def get_template(name: str, directory: Path | None = None) -> str:
    """Load the template file ``name``; results are cached for the process."""
    base_dir = Path(directory) if directory else _TEMPLATE_DIR
    path = base_dir / name
    if not path.is_file():
        raise TemplateNotFoundError(f"Template file not found: {name}")
    return path.read_text(encoding="utf-8")


def available_templates(directory: Path | None = None) -> list[str]:
    base_dir = Path(directory) if directory else _TEMPLATE_DIR
    return sorted(p.name for p in base_dir.iterdir() if p.is_file() and p.suffix in {".txt", ".md"})


__all__ = ["TemplateArg", "fill_template", "get_template", "available_templates"]
