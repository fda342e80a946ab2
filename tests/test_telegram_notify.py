from unittest.mock import MagicMock

import pytest
import requests

import telegram_notify
from telegram_notify import send_telegram_message, telegram_notifier


@pytest.fixture
def post(monkeypatch):
    mock = MagicMock()
    mock.return_value.json.return_value = {"ok": True, "result": {"message_id": 7}}
    monkeypatch.setattr(telegram_notify.requests, "post", mock)
    return mock


def test_notifier_binds_credentials(post):
    notify = telegram_notifier("bot-token", "42")

    assert notify("Gmail sync degraded for a@example.com")["ok"] is True

    url = post.call_args.args[0]
    assert url == "https://api.telegram.org/botbot-token/sendMessage"
    assert post.call_args.kwargs["json"]["chat_id"] == "42"


def test_api_error_is_raised(post):
    post.return_value.json.return_value = {"ok": False, "description": "chat not found"}

    with pytest.raises(RuntimeError, match="chat not found"):
        send_telegram_message("hello", token="t", chat_id="c")


def test_transport_error_is_wrapped(post):
    post.side_effect = requests.ConnectionError("unreachable")

    with pytest.raises(RuntimeError, match="Failed to send Telegram message"):
        send_telegram_message("hello", token="t", chat_id="c")


def test_missing_credentials(monkeypatch):
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)

    with pytest.raises(ValueError):
        send_telegram_message("hello", chat_id="c")
