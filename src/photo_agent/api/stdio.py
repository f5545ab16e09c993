"""Stdio entrypoint: NDJSON frames on stdin/stdout, logs on stderr."""

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator
from typing import TextIO

from photo_agent.api.server import AgentServer
from photo_agent.app_logging import configure_logging
from photo_agent.config import Settings
from photo_agent.containers import AppContainer, build_container

_logger = logging.getLogger(__name__)


class StreamFrameWriter:
    """Writes compact JSON lines to a text stream."""

    def __init__(self, stream: TextIO) -> None:
        self.stream = stream

    async def write(self, message: dict[str, object]) -> None:
        self.stream.write(json.dumps(message, separators=(",", ":")) + "\n")
        self.stream.flush()


async def read_lines(stream: TextIO) -> AsyncIterator[str]:
    """Yield lines from a blocking stream without blocking the event loop."""
    while True:
        line = await asyncio.to_thread(stream.readline)
        if not line:
            return
        yield line


async def run(
    container: AppContainer, stdin: TextIO = sys.stdin, stdout: TextIO = sys.stdout
) -> None:
    """Serve the agent protocol until stdin closes."""
    server = AgentServer(container.controller, StreamFrameWriter(stdout))
    try:
        await server.serve(read_lines(stdin))
    finally:
        await container.close_resources()


def main() -> None:
    """Console entrypoint for ``photo-agent``."""
    settings = Settings()
    configure_logging(settings.log_level)
    container = build_container(settings)
    _logger.info(
        "photo-agent starting: planner=%s llm=%s tool_provider=%s",
        settings.planner_kind,
        container.llm_client is not None,
        settings.tool_provider_url or "-",
    )
    try:
        asyncio.run(run(container))
    except KeyboardInterrupt:
        _logger.info("photo-agent interrupted")


if __name__ == "__main__":
    main()
