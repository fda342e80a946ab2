import os
from typing import Callable, Optional

import requests

TELEGRAM_API_BASE = "https://api.telegram.org/bot{token}/{method}"
DEFAULT_TIMEOUT = 10


def _resolve(value: Optional[str], *, env_var: str) -> str:
    if value:
        return value
    env_value = os.getenv(env_var)
    if env_value:
        return env_value
    raise ValueError(f"{env_var} must be provided via argument or environment variable")


def send_telegram_message(
    text: str,
    *,
    token: Optional[str] = None,
    chat_id: Optional[str] = None,
    timeout: int = DEFAULT_TIMEOUT,
    disable_notification: bool = False,
) -> dict:
    """
    Send a text message to a Telegram chat using the Bot API.
    """
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Message text must be a non-empty string.")

    resolved_token = _resolve(token, env_var="TELEGRAM_BOT_TOKEN")
    resolved_chat_id = _resolve(chat_id, env_var="TELEGRAM_CHAT_ID")

    url = TELEGRAM_API_BASE.format(token=resolved_token, method="sendMessage")
    payload: dict = {
        "chat_id": resolved_chat_id,
        "text": text,
        "disable_notification": disable_notification,
    }

    try:
        response = requests.post(url, json=payload, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise RuntimeError(f"Failed to send Telegram message: {exc}") from exc

    data = response.json()
    if not data.get("ok"):
        description = data.get("description", "Unknown error")
        raise RuntimeError(f"Telegram API returned an error: {description}")
    return data


def telegram_notifier(token: str, chat_id: str) -> Callable[[str], dict]:
    """Bind credentials so the renewal scheduler can alert with a plain ``notify(text)``."""

    def notify(text: str) -> dict:
        return send_telegram_message(text, token=token, chat_id=chat_id)

    return notify
