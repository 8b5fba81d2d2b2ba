"""Tests for the command-line entrypoint and notifier wiring."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List

import pytest

from quail_node import main as entry
from quail_node import state
from quail_node.channel import MemoryChannel
from quail_node.configuration import parse_config
from quail_node.notifier import NullNotifier, OscNotifier
from quail_node.state import Device


def test_parse_args_collects_commands() -> None:
    args = entry.parse_args(["--toggle", "fan", "--toggle", "led", "--pulse", "feed", "--once"])
    assert args.toggle == ["fan", "led"]
    assert args.pulse == ["feed"]
    assert args.once is True
    assert args.config is None


def test_parse_args_rejects_wrong_category() -> None:
    with pytest.raises(SystemExit):
        entry.parse_args(["--pulse", "heater"])


def test_build_notifier_respects_enabled_flag() -> None:
    assert isinstance(entry.build_notifier(parse_config({})), NullNotifier)
    notifier = entry.build_notifier(parse_config({"notifications": {"enabled": True, "port": 9123}}))
    assert isinstance(notifier, OscNotifier)
    assert notifier.is_permission_granted()


def test_build_session_for_memory_backend() -> None:
    session, resources = entry.build_session(parse_config({"store": {"backend": "memory"}}))
    assert resources == []
    assert isinstance(session._channel, MemoryChannel)


def test_osc_notifier_sends_title_and_body(monkeypatch: pytest.MonkeyPatch) -> None:
    sent: List[tuple] = []

    class FakeClient:
        def __init__(self, host: str, port: int) -> None:
            self.target = (host, port)

        def send_message(self, address: str, value: list) -> None:
            sent.append((address, value))

    monkeypatch.setattr("quail_node.notifier.SimpleUDPClient", FakeClient)
    notifier = OscNotifier("127.0.0.1", 9001)
    notifier.notify("QuailSmart Update", "Activated FEED")
    assert sent == [("/quail/notify", ["QuailSmart Update", "Activated FEED"])]

    disabled = OscNotifier("127.0.0.1", 9001, enabled=False)
    disabled.notify("QuailSmart Update", "ignored")
    assert not disabled.is_permission_granted()
    assert len(sent) == 1


def test_osc_notifier_swallows_socket_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    class BrokenClient:
        def __init__(self, host: str, port: int) -> None:
            pass

        def send_message(self, address: str, value: list) -> None:
            raise OSError("network unreachable")

    monkeypatch.setattr("quail_node.notifier.SimpleUDPClient", BrokenClient)
    OscNotifier("127.0.0.1", 9001).notify("title", "body")


def test_once_run_against_memory_store(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("store:\n  backend: memory\nsession:\n  revert_grace_s: 10\n", encoding="utf-8")
    monkeypatch.setitem(state._PULSE_SECONDS, Device.FEED, 0.01)
    args = entry.parse_args(["--config", str(path), "--toggle", "fan", "--pulse", "feed", "--once"])

    asyncio.run(entry.async_main(args))

    output = capsys.readouterr().out
    assert "User authenticated successfully" in output
    assert "FAN turned ON" in output
    assert "Activated FEED" in output
    assert "controls/feed" not in output
