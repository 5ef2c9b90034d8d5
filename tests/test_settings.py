from __future__ import annotations

import dataclasses

import pytest

from pfarm.errors import ConfigInvalid, CredentialsMissing
from pfarm.settings import _env_bool, _env_int, validate_settings
from pfarm.store import JsonFileStore, SqliteStore, open_store


def test_valid_settings_pass(settings) -> None:
    validate_settings(settings)
    assert settings.port_capacity == 10


@pytest.mark.parametrize("user,password", [(None, "x"), ("x", None), ("", "")])
def test_credentials_required(settings, user, password) -> None:
    with pytest.raises(CredentialsMissing):
        validate_settings(dataclasses.replace(settings, vpn_username=user, vpn_password=password))


def test_credentials_checked_before_range(settings) -> None:
    bad = dataclasses.replace(settings, vpn_username=None, port_range_start=30000, port_range_end=20000)
    with pytest.raises(CredentialsMissing):
        validate_settings(bad)


@pytest.mark.parametrize(
    "overrides",
    [
        {"port_range_start": 20009, "port_range_end": 20009},
        {"port_range_start": 20010, "port_range_end": 20000},
        {"max_proxies": 11},
        {"store_backend": "redis"},
    ],
)
def test_invalid_settings(settings, overrides) -> None:
    with pytest.raises(ConfigInvalid) as exc:
        validate_settings(dataclasses.replace(settings, **overrides))
    assert not isinstance(exc.value, CredentialsMissing)


def test_env_parsing(monkeypatch) -> None:
    monkeypatch.setenv("PF_TEST_FLAG", "Yes")
    monkeypatch.setenv("PF_TEST_NUM", "not-a-number")
    assert _env_bool("PF_TEST_FLAG") is True
    assert _env_bool("PF_TEST_MISSING", True) is True
    assert _env_int("PF_TEST_NUM", 7) == 7


def test_open_store_picks_backend(settings, tmp_path) -> None:
    assert isinstance(open_store(settings), JsonFileStore)
    sqlite = open_store(dataclasses.replace(settings, store_backend="sqlite", db_path=str(tmp_path / "p.db")))
    try:
        assert isinstance(sqlite, SqliteStore)
    finally:
        sqlite.close()
    with pytest.raises(ConfigInvalid):
        open_store(dataclasses.replace(settings, store_backend="redis"))
