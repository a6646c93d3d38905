import asyncio
import contextlib
import os
from typing import Protocol

import pydantic
from sanic.log import logger

from cd_relay.builder.models import SolveOptions, SolveStatus
from cd_relay.config import BuilderConfig
from cd_relay.exceptions import EngineError

# rawjson lines carry whole log chunks, well above the asyncio default
_STREAM_LIMIT = 16 * 1024 * 1024


class BuildEngine(Protocol):
    async def solve(
        self, options: SolveOptions, events: "asyncio.Queue[SolveStatus | None]"
    ) -> None:
        """Run one solve, putting every progress event on ``events``."""
        ...


class BuildctlEngine:
    """Drives a BuildKit daemon through ``buildctl build --progress rawjson``."""

    def __init__(self, config: BuilderConfig):
        self.config = config

    def command(self, options: SolveOptions) -> list[str]:
        args = [
            self.config.BUILDCTL_PATH,
            "--addr",
            self.config.BUILDKIT_ADDR,
            "build",
            "--progress",
            "rawjson",
            "--frontend",
            options.frontend,
        ]
        for key, value in options.frontend_attrs.items():
            args += ["--opt", f"{key}={value}"]
        for key, value in options.local_dirs.items():
            args += ["--local", f"{key}={value}"]

        output = [f"type={options.exporter}"]
        output += [f"{key}={value}" for key, value in options.exporter_attrs.items()]
        args += ["--output", ",".join(output)]
        return args

    def environment(self) -> dict[str, str] | None:
        # buildctl attaches the docker credential provider from DOCKER_CONFIG
        if self.config.DOCKER_CONFIG is None:
            return None
        return {**os.environ, "DOCKER_CONFIG": self.config.DOCKER_CONFIG}

    async def solve(
        self, options: SolveOptions, events: "asyncio.Queue[SolveStatus | None]"
    ) -> None:
        args = self.command(options)
        logger.debug("Running %s", " ".join(args))

        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            env=self.environment(),
            limit=_STREAM_LIMIT,
        )

        errors: list[str] = []
        try:
            if proc.stderr is None:
                raise EngineError("buildctl started without a stderr pipe")
            async for raw in proc.stderr:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    status = SolveStatus.model_validate_json(line)
                except pydantic.ValidationError:
                    logger.debug("buildctl: %s", line)
                    errors.append(line)
                    continue

                errors += [v.error for v in status.vertexes if v.error]
                await events.put(status)

            returncode = await proc.wait()
        except ValueError as e:
            # a line longer than the stream limit
            raise EngineError(f"cannot read buildctl output: {e}") from e
        finally:
            if proc.returncode is None:
                logger.debug("Killing buildctl (pid %d)", proc.pid)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        if returncode != 0:
            message = errors[-1] if errors else f"buildctl exited with status {returncode}"
            raise EngineError(message)
