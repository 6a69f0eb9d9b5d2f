"""
Text templates for narratives, tag names and descriptions.

Placeholders are written ``{name}`` or ``{name|fallback}``; ``{{`` and ``}}``
produce literal braces. A placeholder that cannot be resolved is an error,
never an empty string.
"""

import re
from functools import lru_cache
from typing import Any, List, Mapping, NamedTuple, Optional, Union

from ..exceptions import EvaluationError
from .expressions import MAX_FORMULA_LENGTH, canonical_text

ELLIPSIS = "..."

_PLACEHOLDER = re.compile(r"(?P<name>@|[A-Za-z_][A-Za-z0-9_]*)(?:\|(?P<default>[^{}]*))?$")


class Placeholder(NamedTuple):
    name: str
    default: Optional[str] = None


Segment = Union[str, Placeholder]


class Template:
    """A parsed template, reusable across records."""

    def __init__(self, source: str, segments: List[Segment]):
        self.source = source
        self.segments = segments

    @property
    def placeholders(self) -> List[str]:
        """Names referenced by the template, in order of first use."""
        names: List[str] = []
        for segment in self.segments:
            if isinstance(segment, Placeholder) and segment.name not in names:
                names.append(segment.name)
        return names

    def render(self, values: Mapping[str, Any], max_length: Optional[int] = None) -> str:
        """
        Substitute every placeholder.

        Args:
            values: Field name to value
            max_length: Optional cap on the rendered length

        Returns:
            Rendered text

        Raises:
            EvaluationError: If a placeholder is absent or null and has no fallback
        """
        parts: List[str] = []
        for segment in self.segments:
            if isinstance(segment, str):
                parts.append(segment)
                continue

            value = values.get(segment.name)
            if value is None:
                if segment.default is None:
                    state = "null" if segment.name in values else "unresolved"
                    raise EvaluationError(f"Placeholder '{segment.name}' is {state}", formula=self.source)
                parts.append(segment.default)
            else:
                parts.append(canonical_text(value))

        text = "".join(parts)
        return truncate(text, max_length) if max_length else text

    def __repr__(self) -> str:
        return f"Template({self.source!r})"


def truncate(text: str, max_length: int) -> str:
    """Cut text to max_length characters, marking the cut with an ellipsis."""
    if len(text) <= max_length:
        return text
    if max_length <= len(ELLIPSIS):
        return text[:max_length]
    return text[:max_length - len(ELLIPSIS)] + ELLIPSIS


@lru_cache(maxsize=512)
def parse_template(source: str) -> Template:
    """
    Split a template into literal text and placeholders.

    Raises:
        EvaluationError: On unbalanced braces or an invalid placeholder
    """
    if len(source) > MAX_FORMULA_LENGTH:
        raise EvaluationError(f"Template longer than {MAX_FORMULA_LENGTH} characters", formula=source)

    segments: List[Segment] = []
    literal: List[str] = []
    i = 0
    while i < len(source):
        char = source[i]
        if char == "{" and source.startswith("{{", i):
            literal.append("{")
            i += 2
        elif char == "}" and source.startswith("}}", i):
            literal.append("}")
            i += 2
        elif char == "{":
            end = source.find("}", i + 1)
            if end == -1:
                raise EvaluationError(f"Unclosed '{{' at offset {i}", formula=source)
            match = _PLACEHOLDER.match(source[i + 1:end].strip())
            if not match:
                raise EvaluationError(f"Invalid placeholder '{source[i:end + 1]}' at offset {i}", formula=source)
            if literal:
                segments.append("".join(literal))
                literal = []
            segments.append(Placeholder(match.group("name"), match.group("default")))
            i = end + 1
        elif char == "}":
            raise EvaluationError(f"Unmatched '}}' at offset {i}", formula=source)
        else:
            literal.append(char)
            i += 1

    if literal:
        segments.append("".join(literal))
    return Template(source, segments)


def render(source: str, values: Mapping[str, Any], max_length: Optional[int] = None) -> str:
    """Parse (cached) and render a template."""
    return parse_template(source).render(values, max_length=max_length)
