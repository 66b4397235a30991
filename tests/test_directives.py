"""Tests for agenthub.sessions.directives — inline /think parsing."""

from __future__ import annotations

import pytest

from agenthub.sessions.directives import parse_think_directive


class TestParseThinkDirective:

    def test_plain_message_untouched(self):
        result = parse_think_directive("  hello there ")
        assert result.has_directive is False
        assert result.message == "  hello there "
        assert result.think_level is None

    @pytest.mark.parametrize(
        "message,level,rest",
        [
            ("/think high", "high", ""),
            ("/think:low do the thing", "low", "do the thing"),
            ("/t medium explain", "medium", "explain"),
            ("/T:XHIGH", "xhigh", ""),
            ("/think off", "off", ""),
        ],
    )
    def test_levels(self, message: str, level: str, rest: str):
        result = parse_think_directive(message)
        assert result.has_directive is True
        assert result.think_level == level
        assert result.message == rest

    @pytest.mark.parametrize(
        "alias,level",
        [("min", "minimal"), ("mid", "medium"), ("med", "medium"), ("max", "high"),
         ("ultra", "high"), ("none", "off")],
    )
    def test_aliases(self, alias: str, level: str):
        assert parse_think_directive(f"/think {alias}").think_level == level

    def test_bare_directive(self):
        result = parse_think_directive("/think")
        assert result.has_directive is True
        assert result.think_level is None
        assert result.raw_level is None
        assert result.message == ""

    def test_unknown_level_reports_raw(self):
        result = parse_think_directive("/think:turbo go")
        assert result.has_directive is True
        assert result.think_level is None
        assert result.raw_level == "turbo"
        assert result.message == "go"

    def test_multiline_rest_is_kept(self):
        result = parse_think_directive("/t high first line\nsecond line")
        assert result.message == "first line\nsecond line"

    def test_other_commands_are_not_directives(self):
        assert parse_think_directive("/thinking aloud").has_directive is False
        assert parse_think_directive("/new").has_directive is False
