from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Optional, Protocol

from .attachments import iter_attachments
from .config import AppConfig, load_config
from .errors import FinalizeError, MailPrintError, PrintError
from .models import CycleSummary, Intent, Message, ProcessResult, ProcessStatus
from .printing import accepting_printers, print_file
from .rules import classify_intent, is_authorized, is_eligible, matching_user

logger = logging.getLogger(__name__)


class MailClient(Protocol):
    def list_message_ids(self, label_ids: Optional[list[str]] = None) -> list[str]: ...

    def get_message(self, message_id: str) -> Message: ...

    def get_attachment(self, message_id: str, attachment_id: str) -> str: ...

    def remove_label(self, message_id: str, label_id: str) -> None: ...


class Manager:
    """
    Runs the mailbox pipeline: eligibility, authorization, intent, then
    save or save-and-print, then removal of the unread label.

    Failures are contained to the message they happen in. A message whose
    action failed keeps its unread label (unless finalize_on_error is set)
    and is picked up again on the next cycle.
    """

    def __init__(
        self,
        client: Optional[MailClient] = None,
        config: Optional[AppConfig] = None,
    ) -> None:
        self._config = config or load_config()
        if client is None:
            from .gmail_client import GmailClient

            client = GmailClient.from_oauth(user_id=self._config.user_id)
        self._client = client

    @property
    def config(self) -> AppConfig:
        return self._config

    def check_printer(self) -> bool:
        """
        Warn early when the configured printer is not a known CUPS destination.
        """
        printers = accepting_printers()
        if printers and self._config.printer_name not in printers:
            logger.warning(
                f"Printer '{self._config.printer_name}' not found among: {', '.join(printers)}"
            )
            return False
        return True

    # -- pipeline -------------------------------------------------------

    def process_message(self, message_id: str, dry_run: bool = False) -> ProcessResult:
        try:
            msg = self._client.get_message(message_id)
        except MailPrintError as e:
            logger.error(f"Could not fetch message {message_id}: {e}")
            return ProcessResult(
                message_id=message_id,
                status=ProcessStatus.FAILED,
                reason="fetch failed",
                errors=(str(e),),
            )

        result = self.process(msg, dry_run=dry_run)
        _log_result(result)
        return result

    def process(self, msg: Message, dry_run: bool = False) -> ProcessResult:
        cfg = self._config

        if not is_eligible(msg, cfg.unread_label, cfg.personal_label):
            return ProcessResult(
                message_id=msg.message_id,
                status=ProcessStatus.SKIPPED,
                reason="not unread in the personal category",
            )

        if not is_authorized(cfg.authorized_users, cfg.shared_token, msg):
            logger.warning(f"Ignoring message {msg.message_id} from unauthorized sender {msg.sender!r}")
            return ProcessResult(
                message_id=msg.message_id,
                status=ProcessStatus.SKIPPED,
                reason="sender not authorized",
            )

        user = matching_user(cfg.authorized_users, msg)
        who = user.name if user else "shared token"
        intent = classify_intent(msg)
        logger.debug(f"Message {msg.message_id}: intent={intent.value} authorized via {who}")

        if dry_run:
            return ProcessResult(
                message_id=msg.message_id,
                status=ProcessStatus.PLANNED,
                intent=intent,
                reason=f"would {intent.value} (authorized via {who})",
            )

        return self.dispatch(intent, msg)

    def dispatch(self, intent: Intent, msg: Message) -> ProcessResult:
        if intent is Intent.NONE:
            return self._dispatch_unmatched(msg)

        saved: list[Path] = []
        printed: list[Path] = []
        errors: list[str] = []
        action_ok = False
        finalized = False
        finalize_error: Optional[FinalizeError] = None

        try:
            for path in iter_attachments(
                self._client,
                msg,
                self._config.attachment_dir,
                skip_existing=self._config.skip_existing,
            ):
                saved.append(path)
            if intent is Intent.PRINT:
                printed, errors = self._print_files(saved)
            action_ok = not errors
        except MailPrintError as e:
            logger.error(f"{intent.value} failed for message {msg.message_id}: {e}")
            errors.append(str(e))
        finally:
            if action_ok or self._config.finalize_on_error:
                try:
                    self.finalize(msg)
                    finalized = True
                except FinalizeError as e:
                    finalize_error = e
            else:
                self._discard_unprinted(intent, saved, printed)

        if finalize_error is not None:
            errors.append(str(finalize_error))

        if not action_ok:
            status = ProcessStatus.FAILED
            reason = "action failed; left unread" if not finalized else "action failed"
        elif finalize_error is not None:
            status = ProcessStatus.FINALIZE_FAILED
            reason = "action done but message still unread"
        else:
            status = ProcessStatus.PROCESSED
            reason = f"{len(saved)} saved, {len(printed)} printed"

        return ProcessResult(
            message_id=msg.message_id,
            status=status,
            intent=intent,
            reason=reason,
            saved=tuple(saved),
            printed=tuple(printed),
            errors=tuple(errors),
            finalized=finalized,
        )

    def _dispatch_unmatched(self, msg: Message) -> ProcessResult:
        if not self._config.mark_unmatched_read:
            return ProcessResult(
                message_id=msg.message_id,
                status=ProcessStatus.SKIPPED,
                reason="no print/save keyword in subject",
            )
        try:
            self.finalize(msg)
        except FinalizeError as e:
            return ProcessResult(
                message_id=msg.message_id,
                status=ProcessStatus.FINALIZE_FAILED,
                reason="could not mark unmatched message read",
                errors=(str(e),),
            )
        return ProcessResult(
            message_id=msg.message_id,
            status=ProcessStatus.PROCESSED,
            reason="no keyword; marked read",
            finalized=True,
        )

    def _discard_unprinted(self, intent: Intent, saved: list[Path], printed: list[Path]) -> None:
        """
        The message stays unread for a retry. With skip_existing, a retry would
        skip files written now and never print them, so drop the unprinted ones.
        """
        if intent is not Intent.PRINT:
            return
        for path in saved:
            if path in printed:
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove unprinted {path}: {e}")
            else:
                logger.debug(f"Removed unprinted {path.name} so the retry fetches it again.")

    def _print_files(self, paths: list[Path]) -> tuple[list[Path], list[str]]:
        printed: list[Path] = []
        errors: list[str] = []
        for path in paths:
            try:
                self.submit_print(path)
            except PrintError as e:
                logger.error(str(e))
                errors.append(str(e))
                continue
            printed.append(path)
        return printed, errors

    def submit_print(self, path: Path) -> None:
        request_id = print_file(path, self._config.printer_name, title=f"mailprint: {path.name}")
        logger.info(f"Queued {path.name} on {self._config.printer_name} ({request_id or 'no request id'}).")

    def finalize(self, msg: Message) -> None:
        """
        Remove the unread label. Not retried: a failure here is reported.
        """
        try:
            self._client.remove_label(msg.message_id, self._config.unread_label)
        except MailPrintError as e:
            logger.error(
                f"Message {msg.message_id} was handled but could not be marked read "
                f"(it may be processed again next cycle): {e}"
            )
            raise FinalizeError(
                f"Could not remove {self._config.unread_label} from {msg.message_id}: {e}"
            ) from e
        logger.debug(f"Removed {self._config.unread_label} from message {msg.message_id}")

    # -- polling --------------------------------------------------------

    def poll_labels(self) -> list[str]:
        return [self._config.unread_label, self._config.personal_label]

    def run_cycle(self, dry_run: bool = False) -> CycleSummary:
        summary = CycleSummary()
        try:
            ids = self._client.list_message_ids(label_ids=self.poll_labels())
        except MailPrintError as e:
            logger.error(f"Could not list messages: {e}")
            summary.errors.append(str(e))
            return summary

        if not ids:
            logger.info("No candidate messages.")
            return summary

        workers = min(self._config.max_workers, len(ids))
        logger.info(f"Checking {len(ids)} candidate messages with {workers} workers.")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mailprint") as pool:
            futures = {pool.submit(self.process_message, mid, dry_run): mid for mid in ids}
            for fut in as_completed(futures):
                mid = futures[fut]
                try:
                    summary.results.append(fut.result())
                except Exception as e:
                    logger.exception(f"Unexpected error while processing message {mid}")
                    summary.results.append(
                        ProcessResult(
                            message_id=mid,
                            status=ProcessStatus.FAILED,
                            reason="unexpected error",
                            errors=(repr(e),),
                        )
                    )

        logger.info(f"Cycle done: {summary.describe()}")
        return summary

    def run_forever(
        self,
        interval: Optional[int] = None,
        dry_run: bool = False,
        max_cycles: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if interval is None:
            interval = self._config.poll_interval_seconds
        if interval < 1:
            raise ValueError("interval must be >= 1 second")
        cycles = 0
        while True:
            try:
                self.run_cycle(dry_run=dry_run)
            except Exception:
                # keep polling; the next cycle starts from a fresh message list
                logger.exception("Polling cycle failed")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                return
            logger.debug(f"Sleeping {interval}s until next cycle.")
            sleep(interval)


def _log_result(result: ProcessResult) -> None:
    line = f"Message {result.message_id}: {result.status.value} ({result.reason})"
    if result.status in (ProcessStatus.FAILED, ProcessStatus.FINALIZE_FAILED):
        logger.error(line)
    elif result.status is ProcessStatus.SKIPPED:
        logger.debug(line)
    else:
        logger.info(line)
