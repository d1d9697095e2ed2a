from __future__ import annotations

from unittest.mock import patch

import pytest

import main
from fleetrobot.tests.fakes import make_record, make_settings


def _args(**overrides):
    values = {"once": True, "list": False, "team": None, "log_level": "INFO", "log_file": None}
    values.update(overrides)
    return type("Args", (), values)()


def _settings():
    return make_settings(telegram_bot_token="TEST_TOKEN", telegram_admin_chat_ids=("1", "2"))


def test_main_sends_start_and_shutdown_messages_in_once_mode() -> None:
    settings = _settings()

    with (
        patch("main.load_settings", return_value=settings),
        patch("main.MyFleetGateway") as gateway_cls,
        patch("main.TelegramNotifier") as notifier_cls,
        patch("main.run_check_once") as run_once,
        patch("main._send_status_message") as send_status,
        patch("main.argparse.ArgumentParser.parse_args", return_value=_args(once=True)),
    ):
        assert main.main() == 0
        run_once.assert_called_once_with(settings, gateway_cls.return_value, notifier_cls.return_value)

        # startup + shutdown
        assert send_status.call_count == 2
        assert "FleetRobot" in send_status.call_args_list[0].kwargs["text"]
        assert "started" in send_status.call_args_list[0].kwargs["text"]
        assert "FleetRobot stopped (process exit)" in send_status.call_args_list[1].kwargs["text"]


def test_main_sends_crash_and_shutdown_messages_on_error() -> None:
    settings = _settings()

    with (
        patch("main.load_settings", return_value=settings),
        patch("main.MyFleetGateway"),
        patch("main.TelegramNotifier"),
        patch("main._install_signal_handlers"),
        patch("main.run_forever", side_effect=RuntimeError("boom")),
        patch("main._send_status_message") as send_status,
        patch("main.argparse.ArgumentParser.parse_args", return_value=_args(once=False)),
    ):
        with pytest.raises(RuntimeError):
            main.main()

        # startup + crash + shutdown
        assert send_status.call_count == 3
        assert "started" in send_status.call_args_list[0].kwargs["text"]
        assert "stopped with an error" in send_status.call_args_list[1].kwargs["text"]
        assert "RuntimeError: boom" in send_status.call_args_list[1].kwargs["text"]
        assert "process exit" in send_status.call_args_list[2].kwargs["text"]


def test_main_runs_without_notifier_when_no_token() -> None:
    settings = make_settings()

    with (
        patch("main.load_settings", return_value=settings),
        patch("main.MyFleetGateway") as gateway_cls,
        patch("main.run_check_once") as run_once,
        patch("main._send_status_message"),
        patch("main.argparse.ArgumentParser.parse_args", return_value=_args(once=True)),
    ):
        assert main.main() == 0
        run_once.assert_called_once_with(settings, gateway_cls.return_value, None)


def test_list_prints_team_records_without_logging_in(capsys: pytest.CaptureFixture[str]) -> None:
    records = [make_record(id=1, team="rowers"), make_record(id=2, team="scullers", resource="Albatros")]

    with (
        patch("main.load_settings", return_value=make_settings()),
        patch("main.load_records", return_value=records),
        patch("main.MyFleetGateway") as gateway_cls,
        patch("main.argparse.ArgumentParser.parse_args", return_value=_args(list=True, team="scullers")),
    ):
        assert main.main() == 0
        gateway_cls.assert_not_called()

    out = capsys.readouterr().out
    assert "Albatros" in out
    assert "Lynx" not in out
