import asyncio
import io
import json
import os
import tarfile
from unittest.mock import AsyncMock, MagicMock

from cd_relay.builder.models import SolveOptions, SolveStatus
from cd_relay.exceptions import EngineError


def make_context(config: dict | None, files: dict[str, bytes] | None = None) -> bytes:
    """Pack a build context the way the deployer ships it."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:

        def add(name: str, data: bytes):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))

        if config is not None:
            add("config", json.dumps(config).encode())
        for name, data in (files or {}).items():
            add(f"context/{name}", data)
    return buf.getvalue()


def vertex_event(name: str, started: str, completed: str | None = None) -> SolveStatus:
    return SolveStatus.model_validate(
        {
            "vertexes": [
                {
                    "digest": f"sha256:{name}",
                    "name": name,
                    "started": started,
                    "completed": completed,
                }
            ]
        }
    )


class FakeEngine:
    """Emits canned events, optionally raising once ``fail_at`` events were sent."""

    def __init__(self, events: list[SolveStatus], fail_at: int | None = None):
        self.events = events
        self.fail_at = fail_at
        self.options: SolveOptions | None = None
        self.context_files: list[str] = []

    async def solve(self, options: SolveOptions, events: asyncio.Queue) -> None:
        self.options = options
        self.context_files = sorted(os.listdir(options.local_dirs["context"]))

        for i, status in enumerate(self.events):
            if i == self.fail_at:
                raise EngineError(f"failed to solve: step {i}")
            await events.put(status)
            await asyncio.sleep(0)

        if self.fail_at is not None and self.fail_at >= len(self.events):
            raise EngineError("failed to solve: push")


def mock_response(status: int = 200, json_data=None, text: str = "", reason: str = "OK"):
    response = MagicMock()
    response.status = status
    response.reason = reason
    response.json = AsyncMock(return_value=json_data)
    response.text = AsyncMock(return_value=text)
    response.__aenter__.return_value = response
    response.__aexit__.return_value = None
    return response
