"""Tests for command templates."""

from __future__ import annotations

import pytest

from elinux_runner.device.template import (
    CommandTemplate,
    Literal,
    Placeholder,
    interpolate_command,
)
from elinux_runner.errors import RunnerError


class TestParse:
    """Tests for CommandTemplate.parse."""

    def test_parse_tokens(self) -> None:
        template = CommandTemplate.parse(["scp", "${localPath}", "pi@host:/tmp/${appName}"])

        assert template.arguments == (
            (Literal("scp"),),
            (Placeholder("localPath"),),
            (Literal("pi@host:/tmp/"), Placeholder("appName")),
        )
        assert template.placeholders == {"localPath", "appName"}

    def test_parse_shell_string(self) -> None:
        template = CommandTemplate.parse("ssh pi@host 'rm -rf /tmp/${appName}'")

        assert template.source() == ["ssh", "pi@host", "rm -rf /tmp/${appName}"]

    def test_empty_argument_kept(self) -> None:
        template = CommandTemplate.parse(["echo", ""])

        assert template.expand({}) == ["echo", ""]

    def test_empty_template(self) -> None:
        assert CommandTemplate.parse([]).is_empty
        assert not CommandTemplate.parse(["true"]).is_empty


class TestExpand:
    """Tests for CommandTemplate.expand."""

    def test_expand_several_placeholders_in_one_argument(self) -> None:
        template = CommandTemplate.parse(["ssh", "-L", "${hostPort}:localhost:${devicePort}"])

        assert template.expand({"hostPort": "37000", "devicePort": "5000"}) == [
            "ssh",
            "-L",
            "37000:localhost:5000",
        ]

    def test_expand_is_pure(self) -> None:
        template = CommandTemplate.parse(["run", "${appName}"])
        source = template.source()

        first = template.expand({"appName": "hello"})
        second = template.expand({"appName": "hello"})

        assert first == second == ["run", "hello"]
        assert template.source() == source

    def test_values_substituted_literally(self) -> None:
        template = CommandTemplate.parse(["echo", "${appName}"])

        assert template.expand({"appName": "${other}; rm"}) == ["echo", "${other}; rm"]

    def test_unbound_placeholder_raises(self) -> None:
        template = CommandTemplate.parse(["install", "${localPath}", "${appName}"])

        with pytest.raises(RunnerError) as exc_info:
            template.expand({"appName": "hello"})

        assert exc_info.value.code == "ERR_UNBOUND_PLACEHOLDER"
        assert exc_info.value.context["placeholder"] == "localPath"

    def test_additional_bindings_fill_gaps(self) -> None:
        template = CommandTemplate.parse(["deploy", "${appName}", "${host}"])

        result = template.expand({"appName": "hello"}, {"host": "rpi", "appName": "ignored"})

        assert result == ["deploy", "hello", "rpi"]

    def test_dollar_without_braces_is_literal(self) -> None:
        template = CommandTemplate.parse(["sh", "-c", "echo $HOME ${appName}"])

        assert template.expand({"appName": "x"}) == ["sh", "-c", "echo $HOME x"]


def test_interpolate_command() -> None:
    assert interpolate_command("stop ${appName}", {"appName": "hello"}) == ["stop", "hello"]
