import json

import pytest

from cd_relay.exceptions import ValidationError
from cd_relay.models import TriggerEvent, parse_environment, parse_secrets


def headers(**overrides):
    values = {
        "X-Service": "svc",
        "X-Owner": "acct",
        "X-Repo": "svc-repo",
        "X-Sha": "abc123",
        "X-Url": "https://github.com/acct/svc-repo/commit/abc123",
        "X-Installation-Id": "99",
        "X-Env": json.dumps({"MODE": "prod", "WORKERS": 4}),
        "X-Secrets": json.dumps(["db-password", "api-key"]),
    }
    values.update(overrides)
    return {key: value for key, value in values.items() if value is not None}


def test_from_headers():
    event = TriggerEvent.from_headers(headers())

    assert event.service == "svc"
    assert event.owner == "acct"
    assert event.repository == "svc-repo"
    assert event.sha == "abc123"
    assert event.installation_id == 99
    assert event.environment == {"MODE": "prod", "WORKERS": "4"}
    assert event.secrets == ["acct-db-password", "acct-api-key"]


def test_from_headers_minimal():
    event = TriggerEvent.from_headers({"X-Service": "svc", "X-Owner": "acct"})

    assert event.installation_id == 0
    assert event.environment == {}
    assert event.secrets == []
    assert event.repository == ""


@pytest.mark.parametrize("missing", ["X-Service", "X-Owner"])
def test_from_headers_requires_service_and_owner(missing):
    with pytest.raises(ValidationError):
        TriggerEvent.from_headers(headers(**{missing: None}))


def test_from_headers_invalid_installation_id():
    with pytest.raises(ValidationError, match="installation id"):
        TriggerEvent.from_headers(headers(**{"X-Installation-Id": "abc"}))


def test_event_is_frozen():
    event = TriggerEvent.from_headers(headers())

    with pytest.raises(Exception):
        event.sha = "other"


@pytest.mark.parametrize("raw", ["", "{not json", "[1, 2]"])
def test_parse_environment_ignores_bad_input(raw):
    assert parse_environment(raw, "svc") == {}


@pytest.mark.parametrize("raw", ["", "not json", '{"a": 1}'])
def test_parse_secrets_ignores_bad_input(raw):
    assert parse_secrets(raw) == []
