"""
AgentHub entry point.

Configures logging once for every process that imports this module as its
entry point, then hands control to the Click command tree in
:mod:`agenthub.cli.app`.

    agenthub subagent spawn myproj fix-tests --cli codex "make the tests pass"
    agenthub heartbeat run lead
    agenthub daemon start
"""

from __future__ import annotations

import logging

import structlog

# Free text supplied by users or models; clipped before rendering.
_FREE_TEXT_FIELDS = ("prompt", "message", "reply", "alert_text", "preview", "text")
_CLIP_AT = 80


def _clip_free_text(_logger, _method, event_dict):
    for field in _FREE_TEXT_FIELDS:
        value = event_dict.get(field)
        if isinstance(value, str) and len(value) > _CLIP_AT:
            event_dict[field] = f"{value[:_CLIP_AT]}... [truncated]"
    return event_dict


_logging_configured = False


def configure_logging(verbose: bool = False) -> None:
    """Route structlog through stdlib logging; only the first call has effect."""
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=logging.INFO if verbose else logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            _clip_free_text,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def main() -> None:
    """Entry point for the ``agenthub`` command."""
    from agenthub.cli.app import cli

    cli(obj={})


if __name__ == "__main__":
    main()
