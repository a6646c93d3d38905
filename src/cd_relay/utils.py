import re
from pathlib import Path

from sanic.log import logger

_COMPONENT = r"[a-zA-Z0-9]+(?:[._-][a-z0-9]+)*"
_HOST = _COMPONENT + r"(?::[0-9]+)?"
_TAG = r"[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}"

image_validator = re.compile(
    rf"{_HOST}/(?:{_COMPONENT}/)*{_COMPONENT}(?::{_TAG})?"
)

_duration_part = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_duration_units = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def valid_image(image: str) -> bool:
    # the reference must match in full, a matching prefix is not enough
    return image_validator.fullmatch(image) is not None


def rewrite_image(push_repository_url: str, repository_url: str, image: str) -> str:
    """Swap the registry the builder pushed to for the one the gateway pulls from."""
    return image.replace(push_repository_url, repository_url, 1)


def service_name(owner: str, service: str) -> str:
    return f"{owner}-{service}"


def parse_duration(value: str | int | float) -> float:
    """
    Parse a timeout given either as whole seconds or as a duration string.

    Accepts ``90``, ``"90"``, ``"90s"``, ``"1m30s"`` or ``"500ms"`` and returns
    the number of seconds.
    """
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Negative duration {value}")
        return float(value)

    value = value.strip()
    if value.isdigit():
        return float(value)

    total = 0.0
    pos = 0
    for match in _duration_part.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _duration_units[match.group(2)]
        pos = match.end()

    if pos == 0 or pos != len(value):
        raise ValueError(f"Invalid duration {value!r}")
    return total


def read_secret(secrets_path: str, name: str) -> str:
    path = Path(secrets_path) / name
    logger.debug("Reading secret %s", path)
    return path.read_text().strip()
