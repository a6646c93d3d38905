import io
import os
import tarfile
import threading
from datetime import datetime, timezone

from sanic.log import logger

from cd_relay.builder.models import SolveStatus, Vertex, VertexLog, VertexStatus


class BuildLog:
    """
    Ordered, append-only list of progress lines shared by the build tasks.

    Appends are serialised with a mutex so producers running on other threads
    or tasks never lose or duplicate a line.
    """

    def __init__(self):
        self._lines: list[str] = []
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def lines(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


def _timestamp(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.isoformat()


def format_vertex(vertex: Vertex) -> str:
    if vertex.completed is not None:
        duration = 0.0
        if vertex.started is not None:
            duration = (vertex.completed - vertex.started).total_seconds()
        return f"v: {_timestamp(vertex.started)} {vertex.name} {duration:.2f}s"

    started = vertex.started or datetime.now(timezone.utc)
    return f"v: {started.isoformat(timespec='seconds')} {vertex.name}"


def format_status(status: VertexStatus) -> str:
    return f"s: {_timestamp(status.timestamp)} {status.id} {status.current}"


def format_log(log: VertexLog) -> str:
    data = log.data.decode("utf-8", errors="replace").rstrip("\n")
    return f"l: {_timestamp(log.timestamp)} {data}"


def render(status: SolveStatus) -> list[str]:
    """Render one engine event batch: vertexes first, then statuses, then logs."""
    lines = [format_vertex(v) for v in status.vertexes]
    lines += [format_status(s) for s in status.statuses]
    lines += [format_log(entry) for entry in status.logs]
    return lines


def extract_context(archive: bytes, destination: str, preserve_ownership: bool):
    """
    Unpack a build context tarball into ``destination``.

    Ownership recorded in the archive is only applied when
    ``preserve_ownership`` is set, otherwise every member is owned by the
    current process user.
    """
    uid, gid = os.getuid(), os.getgid()

    def _filter(member: tarfile.TarInfo, path: str) -> tarfile.TarInfo:
        member = tarfile.tar_filter(member, path)
        if not preserve_ownership:
            member = member.replace(uid=uid, gid=gid, deep=False)
        return member

    with tarfile.open(fileobj=io.BytesIO(archive), mode="r:*") as tar:
        logger.debug("Extracting %d members into %s", len(tar.getmembers()), destination)
        tar.extractall(destination, filter=_filter, numeric_owner=True)


def first_error(error: BaseException) -> BaseException:
    """Unwrap the first leaf exception of a (possibly nested) exception group."""
    while isinstance(error, BaseExceptionGroup):
        error = error.exceptions[0]
    return error
