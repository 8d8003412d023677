"""
Template engine for provider definitions.

Provider templates use `{{.name}}` actions (whitespace inside the braces is
allowed: `{{ .name }}`) that are replaced by the argument with that name.
Everything outside an action is literal text. Templates are parsed eagerly so
that malformed provider files fail at load time, and rendering is strict: an
action naming an argument that was not supplied is an error rather than empty
output.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, NamedTuple

from ddns_updater.exceptions import TemplateRenderError, TemplateSyntaxError

if TYPE_CHECKING:
    from collections.abc import Mapping
    from typing import Final


ACTION_OPEN: Final[str] = "{{"
ACTION_CLOSE: Final[str] = "}}"

_FIELD_PATTERN: Final[re.Pattern[str]] = re.compile(r"\.([A-Za-z_][A-Za-z0-9_]*)")


class _Field(NamedTuple):
    name: str
    offset: int


class Template:
    """
    A parsed template.

    Attributes
    ----------
    name : str
        Template name, used in error messages.
    source : str
        The original template text.
    """

    def __init__(self, name: str, source: str) -> None:
        """
        Parse `source` into a template.

        Parameters
        ----------
        name : str
            Template name, used in error messages.
        source : str
            The template text.

        Raises
        ------
        TemplateSyntaxError
            If an action is unterminated, empty or not a `.name` lookup.
        """
        self.name = name
        self.source = source
        self._segments: tuple[str | _Field, ...] = tuple(self._parse())

    def _parse(self) -> list[str | _Field]:
        segments: list[str | _Field] = []
        pos = 0
        while True:
            start = self.source.find(ACTION_OPEN, pos)
            if start < 0:
                if pos < len(self.source):
                    segments.append(self.source[pos:])
                return segments
            if start > pos:
                segments.append(self.source[pos:start])

            end = self.source.find(ACTION_CLOSE, start + len(ACTION_OPEN))
            if end < 0:
                msg = "unterminated action"
                raise TemplateSyntaxError(msg, self.name, start)

            action = self.source[start + len(ACTION_OPEN) : end].strip()
            if not action:
                msg = "empty action"
                raise TemplateSyntaxError(msg, self.name, start)
            match = _FIELD_PATTERN.fullmatch(action)
            if match is None:
                msg = f'unsupported action "{action}", expected ".name"'
                raise TemplateSyntaxError(msg, self.name, start)

            segments.append(_Field(match.group(1), start))
            pos = end + len(ACTION_CLOSE)

    @property
    def fields(self) -> frozenset[str]:
        """Names of all arguments referenced by the template."""
        return frozenset(s.name for s in self._segments if isinstance(s, _Field))

    def render(self, args: Mapping[str, str]) -> str:
        """
        Render the template with the given arguments.

        Parameters
        ----------
        args : Mapping[str, str]
            Named arguments available to actions.

        Returns
        -------
        str
            The rendered text.

        Raises
        ------
        TemplateRenderError
            If an action references an argument missing from `args`.
        """
        parts: list[str] = []
        for segment in self._segments:
            if isinstance(segment, str):
                parts.append(segment)
                continue
            try:
                parts.append(args[segment.name])
            except KeyError:
                msg = f'no value for argument "{segment.name}"'
                raise TemplateRenderError(msg, self.name) from None
        return "".join(parts)

    def __repr__(self) -> str:
        return f"Template(name={self.name!r}, source={self.source!r})"
