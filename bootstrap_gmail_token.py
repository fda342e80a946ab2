"""
Authorise a Gmail account, store its OAuth token and (optionally) start its watch.

Usage:
    python3 bootstrap_gmail_token.py you@example.com --watch
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from google_auth_oauthlib.flow import InstalledAppFlow

from app import build_services
from gmail_watch import GMAIL_READ_SCOPES
from logging_utils import configure_logging
from mailbox_locks import normalize_mailbox
from supabase_state import NullStateStore
from sync_config import SyncSettings
from sync_errors import MailSyncError

# Will pick the first existing file from this list unless --client-secret is provided.
PREFERRED_CLIENT_SECRETS = [
    Path("client_secret.json"),
    Path("client_secret_desktop.json"),
    Path("client_secret_web.json"),
]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Launch the Gmail OAuth flow and store a refresh token for an account.",
    )
    parser.add_argument("email", help="Gmail address to authorise.")
    parser.add_argument(
        "--client-secret",
        default="auto",
        help="Path to the OAuth client secret JSON (default: auto-detect).",
    )
    parser.add_argument(
        "--mode",
        choices=["browser", "no-browser"],
        default="browser",
        help="Use 'no-browser' on headless hosts; open the printed URL elsewhere.",
    )
    parser.add_argument(
        "--watch",
        action="store_true",
        help="Register the Gmail watch right after storing the token.",
    )
    return parser.parse_args(argv)


def _client_secret_path(value: str) -> Path | None:
    if value == "auto":
        candidate = next((cand for cand in PREFERRED_CLIENT_SECRETS if cand.exists()), None)
        return candidate.expanduser().resolve() if candidate else None
    path = Path(value).expanduser().resolve()
    return path if path.exists() else None


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging()
    email = normalize_mailbox(args.email)

    client_secret_path = _client_secret_path(args.client_secret)
    if client_secret_path is None:
        print(
            "No client secret found. Provide --client-secret or place a file named "
            f"one of {[p.name for p in PREFERRED_CLIENT_SECRETS]} in the project root.",
            file=sys.stderr,
        )
        return 1

    services = build_services(SyncSettings.from_env())
    if isinstance(services.state_store, NullStateStore):
        print("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set to store the token.", file=sys.stderr)
        return 1

    flow = InstalledAppFlow.from_client_secrets_file(str(client_secret_path), scopes=GMAIL_READ_SCOPES)
    credentials = flow.run_local_server(port=0, open_browser=args.mode == "browser")
    token_json = credentials.to_json()
    services.state_store.upsert_gmail_token(email=email, token_json=token_json)
    # Failed token writes are only logged by the store; confirm by reading back.
    stored = services.state_store.get_gmail_token(email=email)
    if not stored or json.loads(stored) != json.loads(token_json):
        print(f"Token for {email} was not stored; check the Supabase logs above.", file=sys.stderr)
        return 1
    print(f"Stored token for {email} in Supabase.")

    existing = services.state_store.get_subscription(email)
    if existing is not None and existing.needs_reauthorization:
        print(f"{email} was waiting for re-authorisation; registering its watch again.")
    elif not args.watch:
        return 0
    if services.watch_manager is None:
        print("GMAIL_TOPIC_NAME must be configured to register the watch.", file=sys.stderr)
        return 1
    try:
        registration = services.watch_manager.register_watch(email)
    except MailSyncError as exc:
        print(f"Watch registration failed: {exc}", file=sys.stderr)
        return 1
    print(f"Watching {email}: historyId={registration.history_id} expires {registration.expires_at.isoformat()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
