from __future__ import annotations

from unittest.mock import patch

import pytest

from fleetrobot.telegram_notifier import TelegramNotifier
from fleetrobot.tests.fakes import make_settings
from fleetrobot.worker import _send_status_message


def test_status_message_without_token_sends_nothing() -> None:
    with patch("fleetrobot.worker.send_telegram_message") as send_msg:
        _send_status_message(make_settings(telegram_admin_chat_ids=("1",)), text="hi")
        send_msg.assert_not_called()


def test_status_message_goes_to_every_admin_chat() -> None:
    settings = make_settings(telegram_bot_token="TEST_TOKEN", telegram_admin_chat_ids=("1", "2"))

    with patch("fleetrobot.worker.send_telegram_message") as send_msg:
        _send_status_message(settings, text="hi")

    assert [c.kwargs["chat_id"] for c in send_msg.call_args_list] == ["1", "2"]


def test_status_message_keeps_sending_after_one_chat_fails() -> None:
    settings = make_settings(telegram_bot_token="TEST_TOKEN", telegram_admin_chat_ids=("1", "2"))

    with patch("fleetrobot.worker.send_telegram_message", side_effect=[RuntimeError("403"), None]) as send_msg:
        with pytest.raises(RuntimeError, match="some recipients: 1"):
            _send_status_message(settings, text="hi")

    assert send_msg.call_count == 2


def test_notifier_sends_to_team_chat() -> None:
    with patch("fleetrobot.telegram_notifier.send_telegram_message") as send_msg:
        TelegramNotifier("TEST_TOKEN").send("rowers", "-1003", "Booking finished for Lynx at 2030-06-15 10:00 hour.")

    assert send_msg.call_args.kwargs["chat_id"] == "-1003"
    assert send_msg.call_args.kwargs["bot_token"] == "TEST_TOKEN"


def test_notifier_rejects_non_chat_recipient() -> None:
    with patch("fleetrobot.telegram_notifier.send_telegram_message") as send_msg:
        with pytest.raises(RuntimeError, match="not a chat id"):
            TelegramNotifier("TEST_TOKEN").send("rowers", "+31 6 1234", "text")
        send_msg.assert_not_called()
