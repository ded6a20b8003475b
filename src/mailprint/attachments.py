from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path
from typing import Iterator, Protocol

from .errors import AttachmentDecodeError, StorageError
from .models import Message, MessagePart

logger = logging.getLogger(__name__)


class AttachmentSource(Protocol):
    def get_attachment(self, message_id: str, attachment_id: str) -> str: ...


def decode_attachment_data(data: str) -> bytes:
    """
    Gmail attachment bodies are base64url encoded, sometimes without padding.
    Anything outside the url-safe alphabet, including the standard "+" and
    "/", is rejected rather than skipped.
    """
    if not data:
        return b""
    if "+" in data or "/" in data:
        raise AttachmentDecodeError("Attachment data uses the standard base64 alphabet, not base64url")
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise AttachmentDecodeError(f"Malformed base64url attachment data: {e}") from e


def attachment_filename(msg: Message, part: MessagePart, index: int) -> str:
    """
    Use the sender-supplied name, stripped of any directory components so it
    stays inside the attachment directory. Names are not de-duplicated: the
    same name from two messages overwrites.
    """
    name = Path(part.filename.replace("\\", "/")).name.strip()
    if name in ("", ".", ".."):
        return f"{msg.message_id}-{index}"
    return name


def iter_attachments(
    source: AttachmentSource,
    msg: Message,
    target_dir: Path,
    *,
    skip_existing: bool = False,
) -> Iterator[Path]:
    """
    Fetch, decode and write every part that carries an attachment id,
    yielding each path as soon as it is on disk.

    Parts are handled in message order. With skip_existing, a file already
    present under the same name is neither fetched nor rewritten, and is not
    yielded, so callers only see files written by this call.

    Raises TransportError, AttachmentDecodeError or StorageError; the first
    failure stops extraction for this message. Paths yielded before the
    failure are already written.
    """
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageError(f"Cannot create attachment directory {target_dir}: {e}") from e

    for index, part in enumerate(msg.parts):
        if not part.is_attachment:
            continue

        dest = target_dir / attachment_filename(msg, part, index)
        if skip_existing and dest.exists():
            logger.info(f"{dest.name} already saved; skipping (message {msg.message_id}).")
            continue

        data = source.get_attachment(msg.message_id, part.attachment_id)
        content = decode_attachment_data(data)

        try:
            dest.write_bytes(content)
        except OSError as e:
            raise StorageError(f"Cannot write {dest}: {e}") from e

        logger.info(f"Saved {dest.name} ({len(content)} bytes) from message {msg.message_id}.")
        yield dest


def extract_attachments(
    source: AttachmentSource,
    msg: Message,
    target_dir: Path,
    *,
    skip_existing: bool = False,
) -> list[Path]:
    return list(iter_attachments(source, msg, target_dir, skip_existing=skip_existing))
