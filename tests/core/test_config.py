from __future__ import annotations

import logging
from pathlib import Path

import pytest

from botchain.core.config import (
    CONFIG_FILENAME,
    OVERRIDE_FILENAME,
    load_config,
    parse_config,
)
from botchain.core.exceptions import ConfigError


def test_defaults_when_no_config_file(tmp_path: Path) -> None:
    config = load_config(tmp_path)

    assert config.root == tmp_path
    assert config.dispatch.timeout_seconds is None
    assert config.access.default == "allow"
    assert config.access.rules == ()
    assert config.ratelimit.enabled is False
    assert config.ratelimit.key == "scope"
    assert config.session.backend == "memory"
    assert config.session.path is None
    assert config.dialogue.initial_state == "start"
    assert config.log.path == tmp_path / ".botchain" / "botchain.log"
    assert config.log.level == logging.INFO


def test_yaml_file_and_override_are_merged(tmp_path: Path) -> None:
    (tmp_path / CONFIG_FILENAME).write_text(
        "\n".join(
            [
                "dispatch:",
                "  timeout_seconds: 5",
                "ratelimit:",
                "  enabled: true",
                "  capacity: 3",
                "session:",
                "  backend: file",
                "  path: sessions",
                "log:",
                "  level: debug",
            ]
        ),
        encoding="utf-8",
    )
    (tmp_path / OVERRIDE_FILENAME).write_text(
        "ratelimit:\n  key: chat\n", encoding="utf-8"
    )

    config = load_config(tmp_path)

    assert config.dispatch.timeout_seconds == 5.0
    assert config.ratelimit.capacity == 3
    assert config.ratelimit.key == "chat"
    assert config.ratelimit.refill_amount == 1
    assert config.session.path == tmp_path / "sessions"
    assert config.log.level == logging.DEBUG


@pytest.mark.parametrize(
    "raw",
    [
        {"dispatch": {"timeout_seconds": 0}},
        {"dispatch": {"max_concurrency": True}},
        {"access": {"default": "maybe"}},
        {"access": {"rules": {"user_id": 1}}},
        {"ratelimit": {"capacity": -1}},
        {"ratelimit": {"key": "planet"}},
        {"session": {"backend": "redis"}},
        {"session": {"backend": "sqlite"}},
        {"dialogue": {"initial_state": ""}},
        {"log": {"level": "chatty"}},
        {"session": "memory"},
    ],
)
def test_invalid_values_raise_config_error(tmp_path: Path, raw: dict) -> None:
    with pytest.raises(ConfigError):
        parse_config(raw, root=tmp_path)


def test_invalid_yaml_raises_config_error(tmp_path: Path) -> None:
    (tmp_path / CONFIG_FILENAME).write_text("dispatch: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_non_mapping_yaml_raises_config_error(tmp_path: Path) -> None:
    (tmp_path / CONFIG_FILENAME).write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_broken_override_names_the_file(tmp_path: Path) -> None:
    (tmp_path / OVERRIDE_FILENAME).write_text("ratelimit: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError, match="override"):
        load_config(tmp_path)


def test_explicit_path_is_used(tmp_path: Path) -> None:
    custom = tmp_path / "elsewhere.yml"
    custom.write_text("dialogue:\n  initial_state: menu\n", encoding="utf-8")

    assert load_config(tmp_path, path=custom).dialogue.initial_state == "menu"
