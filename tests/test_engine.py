import asyncio
import base64
import json
import os
from unittest.mock import AsyncMock, MagicMock

import pytest

from cd_relay.builder.engine import BuildctlEngine
from cd_relay.builder.models import SolveOptions
from cd_relay.exceptions import EngineError


@pytest.fixture
def options():
    return SolveOptions(
        exporter="image",
        exporter_attrs={"name": "registry.internal:5000/acct/svc:abc", "push": "true"},
        local_dirs={"context": "/tmp/ctx/context", "dockerfile": "/tmp/ctx/context"},
        frontend="dockerfile.v0",
        frontend_attrs={"source": "tonistiigi/dockerfile:v0"},
    )


def fake_buildctl(tmp_path, stderr_lines: list[str], exit_code: int = 0) -> str:
    script = tmp_path / "buildctl"
    body = "\n".join(stderr_lines)
    script.write_text(
        "#!/bin/sh\n"
        f'echo "$@" > "{tmp_path}/args"\n'
        "cat >&2 <<'EOF'\n"
        f"{body}\n"
        "EOF\n"
        f"exit {exit_code}\n"
    )
    os.chmod(script, 0o755)
    return str(script)


def test_command(builder_config, options):
    engine = BuildctlEngine(builder_config)

    assert engine.command(options) == [
        "buildctl",
        "--addr",
        "tcp://buildkit:1234",
        "build",
        "--progress",
        "rawjson",
        "--frontend",
        "dockerfile.v0",
        "--opt",
        "source=tonistiigi/dockerfile:v0",
        "--local",
        "context=/tmp/ctx/context",
        "--local",
        "dockerfile=/tmp/ctx/context",
        "--output",
        "type=image,name=registry.internal:5000/acct/svc:abc,push=true",
    ]


def test_environment(builder_config):
    assert BuildctlEngine(builder_config).environment() is None

    config = builder_config.model_copy(update={"DOCKER_CONFIG": "/var/secrets/docker"})
    env = BuildctlEngine(config).environment()
    assert env["DOCKER_CONFIG"] == "/var/secrets/docker"


@pytest.mark.asyncio
async def test_solve_streams_events(tmp_path, builder_config, options):
    lines = [
        json.dumps(
            {
                "vertexes": [
                    {
                        "digest": "sha256:1",
                        "name": "[1/1] FROM alpine",
                        "started": "2024-01-01T10:00:00.000000001Z",
                    }
                ]
            }
        ),
        "#1 some plain progress line",
        json.dumps(
            {
                "logs": [
                    {
                        "vertex": "sha256:1",
                        "stream": 1,
                        "data": base64.b64encode(b"hello\n").decode(),
                        "timestamp": "2024-01-01T10:00:01Z",
                    }
                ]
            }
        ),
    ]
    config = builder_config.model_copy(
        update={"BUILDCTL_PATH": fake_buildctl(tmp_path, lines)}
    )
    events: asyncio.Queue = asyncio.Queue()

    await BuildctlEngine(config).solve(options, events)

    first = events.get_nowait()
    second = events.get_nowait()
    assert events.empty()
    assert first.vertexes[0].name == "[1/1] FROM alpine"
    assert second.logs[0].data == b"hello\n"

    args = (tmp_path / "args").read_text()
    assert "--progress rawjson" in args
    assert "--output type=image,name=registry.internal:5000/acct/svc:abc,push=true" in args


@pytest.mark.asyncio
async def test_solve_failure_raises_engine_error(tmp_path, builder_config, options):
    lines = [
        json.dumps(
            {
                "vertexes": [
                    {
                        "digest": "sha256:2",
                        "name": "[2/2] RUN make",
                        "error": "process \"make\" did not complete successfully",
                    }
                ]
            }
        ),
        "error: failed to solve: process \"make\" did not complete successfully: exit code: 2",
    ]
    config = builder_config.model_copy(
        update={"BUILDCTL_PATH": fake_buildctl(tmp_path, lines, exit_code=1)}
    )
    events: asyncio.Queue = asyncio.Queue()

    with pytest.raises(EngineError, match="failed to solve"):
        await BuildctlEngine(config).solve(options, events)

    assert events.qsize() == 1


@pytest.mark.asyncio
async def test_solve_failure_without_output(tmp_path, builder_config, options):
    config = builder_config.model_copy(
        update={"BUILDCTL_PATH": fake_buildctl(tmp_path, [], exit_code=3)}
    )

    with pytest.raises(EngineError, match="exited with status 3"):
        await BuildctlEngine(config).solve(options, asyncio.Queue())


@pytest.mark.asyncio
async def test_solve_oversized_line_stops_buildctl(tmp_path, builder_config, options):
    script = tmp_path / "buildctl"
    script.write_text(
        "#!/bin/sh\n"
        f'echo $$ > "{tmp_path}/pid"\n'
        "head -c 17000000 /dev/zero | tr '\\0' 'a' >&2\n"
        "exec sleep 30\n"
    )
    os.chmod(script, 0o755)
    config = builder_config.model_copy(update={"BUILDCTL_PATH": str(script)})

    with pytest.raises(EngineError, match="cannot read buildctl output"):
        await BuildctlEngine(config).solve(options, asyncio.Queue())

    pid = int((tmp_path / "pid").read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_solve_without_stderr_pipe(builder_config, options, monkeypatch):
    proc = MagicMock(stderr=None, returncode=0, pid=1)
    monkeypatch.setattr(
        asyncio, "create_subprocess_exec", AsyncMock(return_value=proc)
    )

    with pytest.raises(EngineError, match="without a stderr pipe"):
        await BuildctlEngine(builder_config).solve(options, asyncio.Queue())
