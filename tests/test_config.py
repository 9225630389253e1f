"""Unit tests for settings loading and precedence."""

from pathlib import Path

import pytest

from external_mdns.config import ConfigError, Settings, _parse_bool, find_config_file, load_settings
from external_mdns.resource import SourceType


def write_config(path: Path, body: str) -> str:
    path.write_text(body, encoding="utf-8")
    return str(path)


def test_defaults_without_config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))

    settings = load_settings({}, environ={})

    assert settings == Settings()
    assert settings.source == ("service",)


def test_config_file_values(tmp_path: Path) -> None:
    path = write_config(
        tmp_path / "external-mdns.yaml",
        "record-ttl: 60\nsource: [ingress, service]\nexpose-ipv6: true\n",
    )

    settings = load_settings({}, environ={}, config_file=path)

    assert settings.record_ttl == 60
    assert settings.source == ("ingress", "service")
    assert settings.expose_ipv6 is True


def test_env_overrides_file_and_flag_overrides_env(tmp_path: Path) -> None:
    path = write_config(tmp_path / "c.yaml", "record-ttl: 60\ndefault-namespace: home\n")
    environ = {"EXTERNAL_MDNS_RECORD_TTL": "90", "EXTERNAL_MDNS_DEFAULT_NAMESPACE": "lab"}

    settings = load_settings({"record_ttl": 30, "default_namespace": None}, environ=environ, config_file=path)

    assert settings.record_ttl == 30
    assert settings.default_namespace == "lab"


def test_env_booleans_and_lists() -> None:
    environ = {
        "EXTERNAL_MDNS_WITHOUT_NAMESPACE": "yes",
        "EXTERNAL_MDNS_EXPOSE_IPV4": "false",
        "EXTERNAL_MDNS_SOURCE": "ingress, bogus, ingress",
    }

    settings = load_settings({}, environ=environ, config_file="")

    assert settings.without_namespace is True
    assert settings.expose_ipv4 is False
    assert settings.source == ("ingress",)


def test_no_valid_sources_is_an_error() -> None:
    with pytest.raises(ConfigError):
        load_settings({"source": "pods"}, environ={})


def test_bad_integer_is_an_error() -> None:
    with pytest.raises(ConfigError):
        load_settings({}, environ={"EXTERNAL_MDNS_RECORD_TTL": "soon"})


def test_unreadable_config_file_is_an_error(tmp_path: Path) -> None:
    path = write_config(tmp_path / "broken.yaml", "record-ttl: [unclosed\n")
    with pytest.raises(ConfigError):
        load_settings({}, environ={}, config_file=path)


def test_find_config_file_searches_working_directory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "nowhere"))
    (tmp_path / "external-mdns.yaml").write_text("debug: true\n", encoding="utf-8")

    found = find_config_file()

    assert found is not None
    assert found.name == "external-mdns.yaml"


def test_record_policy_from_settings() -> None:
    settings = Settings(record_ttl=10, expose_ipv6=True, default_namespace="home", without_namespace=True)

    policy = settings.record_policy()

    assert policy.ttl == 10
    assert policy.expose_ipv4 is True
    assert policy.expose_ipv6 is True
    assert policy.default_namespace == "home"
    assert policy.without_namespace is True
    assert policy.unqualified_sources == frozenset({SourceType.INGRESS})


@pytest.mark.parametrize("value,expected", [("on", True), ("0", False), (None, True), (False, False)])
def test_parse_bool(value, expected) -> None:
    assert _parse_bool(value) is expected


def test_settings_sources_are_immutable() -> None:
    settings = load_settings({"source": "service,ingress"}, environ={}, config_file="")

    assert isinstance(settings.source, tuple)
    with pytest.raises(AttributeError):
        settings.source.append("pods")
