"""Command templates - ``${name}`` placeholders resolved into an argv list."""

from __future__ import annotations

import re
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from elinux_runner.errors import unbound_placeholder_error

PLACEHOLDER_PATTERN = re.compile(r"\$\{(\w+)\}")


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Placeholder:
    name: str


Token = Literal | Placeholder


def _tokenize(argument: str) -> tuple[Token, ...]:
    tokens: list[Token] = []
    position = 0
    for match in PLACEHOLDER_PATTERN.finditer(argument):
        if match.start() > position:
            tokens.append(Literal(argument[position : match.start()]))
        tokens.append(Placeholder(match.group(1)))
        position = match.end()
    if position < len(argument) or not tokens:
        tokens.append(Literal(argument[position:]))
    return tuple(tokens)


@dataclass(frozen=True)
class CommandTemplate:
    """An operator-defined command, one token sequence per argument."""

    arguments: tuple[tuple[Token, ...], ...]

    @classmethod
    def parse(cls, command: Sequence[str] | str) -> CommandTemplate:
        """Parse an argv list, or a shell-style string split with shlex."""
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        return cls(tuple(_tokenize(argument) for argument in argv))

    @property
    def placeholders(self) -> set[str]:
        return {
            token.name
            for argument in self.arguments
            for token in argument
            if isinstance(token, Placeholder)
        }

    @property
    def is_empty(self) -> bool:
        return not self.arguments

    def source(self) -> list[str]:
        """Return the unexpanded argv, placeholders written back as ``${name}``."""
        return [
            "".join(
                token.text if isinstance(token, Literal) else f"${{{token.name}}}"
                for token in argument
            )
            for argument in self.arguments
        ]

    def expand(
        self,
        bindings: Mapping[str, str],
        additional: Mapping[str, str] | None = None,
    ) -> list[str]:
        """Substitute every placeholder and return the argv.

        ``additional`` bindings only fill names the primary bindings lack.

        Raises:
            RunnerError: If a placeholder has no binding
        """
        values = {**(additional or {}), **bindings}
        argv: list[str] = []
        for argument in self.arguments:
            parts: list[str] = []
            for token in argument:
                if isinstance(token, Literal):
                    parts.append(token.text)
                    continue
                if token.name not in values:
                    raise unbound_placeholder_error(token.name, self.source())
                parts.append(values[token.name])
            argv.append("".join(parts))
        return argv


def interpolate_command(
    command: Sequence[str] | str,
    bindings: Mapping[str, str],
    additional: Mapping[str, str] | None = None,
) -> list[str]:
    """Parse and expand ``command`` in one step."""
    return CommandTemplate.parse(command).expand(bindings, additional)
