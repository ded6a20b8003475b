from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Iterator, Optional

import httplib2
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .errors import TransportError
from .models import Header, Message, MessagePart

logger = logging.getLogger(__name__)

# Read messages, fetch attachments, remove UNREAD. Nothing broader.
SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]


def _default_secrets_dir() -> Path:
    return Path(os.environ.get("MAILPRINT_SECRETS_DIR", "secrets")).expanduser()


def _client_secret_path() -> Path:
    p = os.environ.get("MAILPRINT_GMAIL_CLIENT_SECRET")
    if p:
        return Path(p).expanduser()
    return _default_secrets_dir() / "gmail_oauth_client.json"


def _token_path() -> Path:
    p = os.environ.get("MAILPRINT_GMAIL_TOKEN_PATH")
    if p:
        return Path(p).expanduser()
    return _default_secrets_dir() / "gmail_token.json"


def _parse_headers(payload: dict[str, Any]) -> tuple[Header, ...]:
    # Order and duplicates are kept as Gmail returns them.
    out: list[Header] = []
    for h in payload.get("headers", []) or []:
        name = (h.get("name") or "").strip()
        if name:
            out.append(Header(name=name, value=(h.get("value") or "").strip()))
    return tuple(out)


def _walk_parts(payload: dict[str, Any]) -> Iterator[dict[str, Any]]:
    """
    Pre-order walk of nested multipart payloads, children in source order.
    The root payload itself is not yielded.
    """
    for child in payload.get("parts", []) or []:
        if not isinstance(child, dict):
            continue
        yield child
        yield from _walk_parts(child)


def _parse_part(part: dict[str, Any]) -> MessagePart:
    body = part.get("body", {}) or {}
    return MessagePart(
        filename=part.get("filename") or "",
        attachment_id=body.get("attachmentId") or "",
        mime_type=part.get("mimeType") or "",
        size=int(body.get("size") or 0),
        has_body=bool(body.get("data") or body.get("attachmentId")),
    )


def message_from_api(msg: dict[str, Any]) -> Message:
    """
    Convert a users.messages.get(format="full") response into a Message.
    """
    payload = msg.get("payload", {}) or {}
    return Message(
        message_id=msg["id"],
        thread_id=msg.get("threadId"),
        headers=_parse_headers(payload),
        labels=frozenset(msg.get("labelIds", []) or []),
        parts=tuple(_parse_part(p) for p in _walk_parts(payload)),
    )


def _execute(req: Any, what: str) -> dict[str, Any]:
    try:
        return req.execute() or {}
    except HttpError as e:
        raise TransportError(f"Gmail API error during {what}: {e}") from e
    except (GoogleAuthError, httplib2.HttpLib2Error, OSError) as e:
        raise TransportError(f"Gmail transport error during {what}: {e}") from e


class GmailClient:
    def __init__(self, creds: Credentials, user_id: str = "me") -> None:
        self._creds = creds
        self.user_id = user_id
        # The discovery client's HTTP transport is not thread-safe: one service per thread.
        self._local = threading.local()

    def _service(self) -> Any:
        svc = getattr(self._local, "svc", None)
        if svc is None:
            svc = build("gmail", "v1", credentials=self._creds)
            self._local.svc = svc
        return svc

    def _messages(self) -> Any:
        return self._service().users().messages()

    @staticmethod
    def from_oauth(user_id: str = "me") -> "GmailClient":
        """
        Loads cached OAuth token if present, otherwise performs interactive login.
        Client secret JSON must be present at secrets/gmail_oauth_client.json (default)
        or at MAILPRINT_GMAIL_CLIENT_SECRET.
        """
        secrets_dir = _default_secrets_dir()
        secrets_dir.mkdir(parents=True, exist_ok=True)

        token_path = _token_path()
        client_secret = _client_secret_path()

        creds: Optional[Credentials] = None
        if token_path.exists():
            creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)

        if not creds or not creds.valid:
            if creds and creds.expired and creds.refresh_token:
                creds.refresh(Request())
            else:
                if not client_secret.exists():
                    raise FileNotFoundError(
                        f"Missing Gmail OAuth client secret at: {client_secret}. "
                        "Download OAuth client JSON (Desktop app) from Google Cloud Console "
                        "and place it there (or set MAILPRINT_GMAIL_CLIENT_SECRET)."
                    )
                flow = InstalledAppFlow.from_client_secrets_file(str(client_secret), SCOPES)
                creds = flow.run_local_server(port=0, open_browser=True)
            token_path.write_text(creds.to_json(), encoding="utf-8")
            logger.info(f"Saved Gmail token to {token_path}")

        return GmailClient(creds, user_id=user_id)

    def list_message_ids(
        self,
        label_ids: Optional[list[str]] = None,
        page_size: int = 100,
    ) -> list[str]:
        """
        Ids of all messages carrying every label in label_ids, following
        nextPageToken to the end.
        """
        ids: list[str] = []
        page_token: Optional[str] = None
        while True:
            kwargs: dict[str, Any] = {"userId": self.user_id, "maxResults": page_size}
            if label_ids:
                kwargs["labelIds"] = label_ids
            if page_token:
                kwargs["pageToken"] = page_token

            resp = _execute(self._messages().list(**kwargs), "list")
            for m in resp.get("messages", []) or []:
                mid = m.get("id")
                if mid:
                    ids.append(mid)

            page_token = resp.get("nextPageToken")
            if not page_token:
                return ids

    def get_message(self, message_id: str) -> Message:
        req = self._messages().get(userId=self.user_id, id=message_id, format="full")
        return message_from_api(_execute(req, f"get {message_id}"))

    def get_attachment(self, message_id: str, attachment_id: str) -> str:
        """
        Returns the raw base64url `data` field; decoding is up to the caller.
        """
        req = (
            self._messages()
            .attachments()
            .get(userId=self.user_id, messageId=message_id, id=attachment_id)
        )
        resp = _execute(req, f"attachment fetch for {message_id}")
        return resp.get("data", "") or ""

    def modify_labels(
        self,
        message_id: str,
        add: Optional[list[str]] = None,
        remove: Optional[list[str]] = None,
    ) -> None:
        body = {"addLabelIds": add or [], "removeLabelIds": remove or []}
        req = self._messages().modify(userId=self.user_id, id=message_id, body=body)
        _execute(req, f"modify {message_id}")

    def remove_label(self, message_id: str, label_id: str) -> None:
        self.modify_labels(message_id, remove=[label_id])
