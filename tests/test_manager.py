from __future__ import annotations

import base64
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from mailprint.config import AppConfig
from mailprint.errors import PrintError, TransportError
from mailprint.manager import Manager
from mailprint.models import AuthorizedUser, Header, Intent, Message, MessagePart, ProcessStatus

PRINTER = "Deskjet-3050A-J611-series"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


def _msg(
    message_id: str,
    subject: str,
    sender: str = "authorized@example.com",
    labels=("UNREAD", "CATEGORY_PERSONAL"),
    parts=(),
) -> Message:
    return Message(
        message_id=message_id,
        thread_id=None,
        headers=(Header("From", sender), Header("Subject", subject)),
        labels=frozenset(labels),
        parts=tuple(parts),
    )


class FakeClient:
    def __init__(self, messages=(), attachments=None, fail_remove=False):
        self.messages = {m.message_id: m for m in messages}
        self.attachments = attachments or {}
        self.fail_remove = fail_remove
        self.fetched: list[str] = []
        self.removed: list[tuple[str, str]] = []
        self.list_error = None

    def list_message_ids(self, label_ids=None):
        if self.list_error:
            raise self.list_error
        return list(self.messages)

    def get_message(self, message_id):
        if message_id not in self.messages:
            raise TransportError(f"404 {message_id}")
        return self.messages[message_id]

    def get_attachment(self, message_id, attachment_id):
        self.fetched.append(attachment_id)
        return self.attachments[attachment_id]

    def remove_label(self, message_id, label_id):
        if self.fail_remove:
            raise TransportError("500 backend error")
        self.removed.append((message_id, label_id))


@pytest.fixture
def cfg(tmp_path: Path) -> AppConfig:
    return AppConfig(
        printer_name=PRINTER,
        attachment_dir=tmp_path / "files",
        authorized_users=(AuthorizedUser("Owner", ("authorized@example.com",)),),
        shared_token="s3cret",
        max_workers=2,
    )


@pytest.fixture
def lp(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    fake = MagicMock(side_effect=lambda path, printer, title=None: f"{printer}-1")
    monkeypatch.setattr("mailprint.manager.print_file", fake)
    return fake


def test_manager_initializes_with_defaults(monkeypatch: pytest.MonkeyPatch):
    mock_client_cls = MagicMock()
    monkeypatch.setattr("mailprint.gmail_client.GmailClient", mock_client_cls)
    monkeypatch.setattr("mailprint.manager.load_config", lambda: AppConfig(user_id="someone@example.com"))

    mgr = Manager()
    mock_client_cls.from_oauth.assert_called_once_with(user_id="someone@example.com")
    assert mgr.config.user_id == "someone@example.com"


def test_print_message_end_to_end(cfg: AppConfig, lp: MagicMock):
    m1 = _msg("M1", "please print", parts=[MessagePart(filename="doc.pdf", attachment_id="A1")])
    client = FakeClient([m1], {"A1": _b64url(b"%PDF-1.4 payload")})

    result = Manager(client=client, config=cfg).process_message("M1")

    doc = cfg.attachment_dir / "doc.pdf"
    assert result.status is ProcessStatus.PROCESSED
    assert result.intent is Intent.PRINT
    assert client.fetched == ["A1"]
    assert doc.read_bytes() == b"%PDF-1.4 payload"
    lp.assert_called_once_with(doc, PRINTER, title="mailprint: doc.pdf")
    assert result.printed == (doc,)
    assert client.removed == [("M1", "UNREAD")]
    assert result.finalized is True


def test_save_message_does_not_print(cfg: AppConfig, lp: MagicMock):
    msg = _msg("S1", "Save this", parts=[MessagePart(filename="a.jpg", attachment_id="A1")])
    client = FakeClient([msg], {"A1": _b64url(b"jpeg")})

    result = Manager(client=client, config=cfg).process_message("S1")

    assert result.status is ProcessStatus.PROCESSED
    assert result.intent is Intent.SAVE
    assert (cfg.attachment_dir / "a.jpg").read_bytes() == b"jpeg"
    lp.assert_not_called()
    assert client.removed == [("S1", "UNREAD")]


def test_read_message_is_left_alone(cfg: AppConfig, lp: MagicMock):
    m2 = _msg("M2", "please print", labels=("CATEGORY_PERSONAL",), parts=[MessagePart(filename="doc.pdf", attachment_id="A1")])
    client = FakeClient([m2], {"A1": _b64url(b"x")})

    result = Manager(client=client, config=cfg).process_message("M2")

    assert result.status is ProcessStatus.SKIPPED
    assert client.fetched == []
    assert client.removed == []
    assert not (cfg.attachment_dir / "doc.pdf").exists()
    lp.assert_not_called()


def test_non_personal_category_is_left_alone(cfg: AppConfig, lp: MagicMock):
    msg = _msg("P1", "print", labels=("UNREAD", "CATEGORY_PROMOTIONS"))
    client = FakeClient([msg])

    result = Manager(client=client, config=cfg).process_message("P1")

    assert result.status is ProcessStatus.SKIPPED
    assert client.removed == []


def test_unauthorized_sender_is_ignored(cfg: AppConfig, lp: MagicMock):
    m3 = _msg("M3", "save please", sender="stranger@elsewhere.org", parts=[MessagePart(filename="x.pdf", attachment_id="A1")])
    client = FakeClient([m3], {"A1": _b64url(b"x")})

    result = Manager(client=client, config=cfg).process_message("M3")

    assert result.status is ProcessStatus.SKIPPED
    assert result.reason == "sender not authorized"
    assert client.fetched == []
    assert client.removed == []


def test_shared_token_lets_stranger_through(cfg: AppConfig, lp: MagicMock):
    msg = _msg("T1", "save S3CRET", sender="stranger@elsewhere.org", parts=[MessagePart(filename="x.pdf", attachment_id="A1")])
    client = FakeClient([msg], {"A1": _b64url(b"x")})

    result = Manager(client=client, config=cfg).process_message("T1")

    assert result.status is ProcessStatus.PROCESSED
    assert client.removed == [("T1", "UNREAD")]


def test_no_keyword_is_skipped_and_stays_unread(cfg: AppConfig, lp: MagicMock):
    client = FakeClient([_msg("N1", "hello there")])

    result = Manager(client=client, config=cfg).process_message("N1")

    assert result.status is ProcessStatus.SKIPPED
    assert client.removed == []


def test_no_keyword_marked_read_when_configured(cfg: AppConfig, lp: MagicMock):
    from dataclasses import replace

    client = FakeClient([_msg("N1", "hello there")])

    result = Manager(client=client, config=replace(cfg, mark_unmatched_read=True)).process_message("N1")

    assert result.status is ProcessStatus.PROCESSED
    assert client.removed == [("N1", "UNREAD")]


def test_decode_failure_leaves_message_unread(cfg: AppConfig, lp: MagicMock):
    msg = _msg("B1", "print", parts=[MessagePart(filename="bad.pdf", attachment_id="A1")])
    client = FakeClient([msg], {"A1": "!!not-base64!!"})

    result = Manager(client=client, config=cfg).process_message("B1")

    assert result.status is ProcessStatus.FAILED
    assert result.errors
    assert result.finalized is False
    assert client.removed == []
    lp.assert_not_called()


def test_decode_failure_finalized_when_configured(cfg: AppConfig, lp: MagicMock):
    from dataclasses import replace

    msg = _msg("B1", "print", parts=[MessagePart(filename="bad.pdf", attachment_id="A1")])
    client = FakeClient([msg], {"A1": "!!not-base64!!"})

    result = Manager(client=client, config=replace(cfg, finalize_on_error=True)).process_message("B1")

    assert result.status is ProcessStatus.FAILED
    assert result.finalized is True
    assert client.removed == [("B1", "UNREAD")]


def test_one_print_failure_does_not_stop_the_others(cfg: AppConfig, monkeypatch: pytest.MonkeyPatch):
    def fake_print(path, printer, title=None):
        if path.name == "first.pdf":
            raise PrintError(f"lp rejected {path.name} for {printer}: lp: jam")
        return f"{printer}-2"

    monkeypatch.setattr("mailprint.manager.print_file", fake_print)

    msg = _msg(
        "P2",
        "print",
        parts=[
            MessagePart(filename="first.pdf", attachment_id="A1"),
            MessagePart(filename="second.pdf", attachment_id="A2"),
        ],
    )
    client = FakeClient([msg], {"A1": _b64url(b"1"), "A2": _b64url(b"2")})

    result = Manager(client=client, config=cfg).process_message("P2")

    assert result.status is ProcessStatus.FAILED
    assert [p.name for p in result.printed] == ["second.pdf"]
    assert len(result.errors) == 1
    assert "first.pdf" in result.errors[0]
    assert client.removed == []


def test_print_failure_is_retried_with_skip_existing(cfg: AppConfig, monkeypatch: pytest.MonkeyPatch):
    from dataclasses import replace

    queued: list[str] = []
    jammed = {"first.pdf"}

    def fake_print(path, printer, title=None):
        queued.append(path.name)
        if path.name in jammed:
            raise PrintError(f"lp rejected {path.name} for {printer}: lp: jam")
        return f"{printer}-{len(queued)}"

    monkeypatch.setattr("mailprint.manager.print_file", fake_print)

    msg = _msg(
        "P3",
        "print",
        parts=[
            MessagePart(filename="first.pdf", attachment_id="A1"),
            MessagePart(filename="second.pdf", attachment_id="A2"),
        ],
    )
    client = FakeClient([msg], {"A1": _b64url(b"1"), "A2": _b64url(b"2")})
    mgr = Manager(client=client, config=replace(cfg, skip_existing=True))

    first = mgr.process_message("P3")
    assert first.status is ProcessStatus.FAILED
    assert client.removed == []
    assert not (cfg.attachment_dir / "first.pdf").exists()
    assert (cfg.attachment_dir / "second.pdf").exists()

    jammed.clear()
    second = mgr.process_message("P3")

    assert second.status is ProcessStatus.PROCESSED
    assert queued == ["first.pdf", "second.pdf", "first.pdf"]
    assert client.fetched == ["A1", "A2", "A1"]
    assert [p.name for p in second.printed] == ["first.pdf"]
    assert client.removed == [("P3", "UNREAD")]


def test_decode_failure_is_retried_with_skip_existing(cfg: AppConfig, lp: MagicMock):
    from dataclasses import replace

    msg = _msg(
        "P4",
        "print",
        parts=[
            MessagePart(filename="first.pdf", attachment_id="A1"),
            MessagePart(filename="second.pdf", attachment_id="A2"),
        ],
    )
    client = FakeClient([msg], {"A1": _b64url(b"1"), "A2": "%%%"})
    mgr = Manager(client=client, config=replace(cfg, skip_existing=True))

    first = mgr.process_message("P4")
    assert first.status is ProcessStatus.FAILED
    assert not (cfg.attachment_dir / "first.pdf").exists()
    lp.assert_not_called()

    client.attachments["A2"] = _b64url(b"2")
    second = mgr.process_message("P4")

    assert second.status is ProcessStatus.PROCESSED
    assert [c.args[0].name for c in lp.call_args_list] == ["first.pdf", "second.pdf"]
    assert client.removed == [("P4", "UNREAD")]


def test_failed_save_keeps_written_files(cfg: AppConfig, lp: MagicMock):
    msg = _msg(
        "S2",
        "save",
        parts=[
            MessagePart(filename="first.txt", attachment_id="A1"),
            MessagePart(filename="second.txt", attachment_id="A2"),
        ],
    )
    client = FakeClient([msg], {"A1": _b64url(b"1"), "A2": "%%%"})

    result = Manager(client=client, config=cfg).process_message("S2")

    assert result.status is ProcessStatus.FAILED
    assert (cfg.attachment_dir / "first.txt").read_bytes() == b"1"
    assert client.removed == []


def test_finalize_failure_is_reported_distinctly(cfg: AppConfig, lp: MagicMock):
    msg = _msg("F1", "save", parts=[MessagePart(filename="a.txt", attachment_id="A1")])
    client = FakeClient([msg], {"A1": _b64url(b"a")}, fail_remove=True)

    result = Manager(client=client, config=cfg).process_message("F1")

    assert result.status is ProcessStatus.FINALIZE_FAILED
    assert (cfg.attachment_dir / "a.txt").exists()
    assert result.finalized is False


def test_skip_existing_rerun_does_not_refetch_or_reprint(cfg: AppConfig, lp: MagicMock):
    from dataclasses import replace

    cfg = replace(cfg, skip_existing=True)
    cfg.attachment_dir.mkdir(parents=True)
    (cfg.attachment_dir / "invoice.pdf").write_bytes(b"first run")

    msg = _msg("R1", "print", parts=[MessagePart(filename="invoice.pdf", attachment_id="A1")])
    client = FakeClient([msg], {"A1": _b64url(b"second run")})

    result = Manager(client=client, config=cfg).process_message("R1")

    assert result.status is ProcessStatus.PROCESSED
    assert client.fetched == []
    assert (cfg.attachment_dir / "invoice.pdf").read_bytes() == b"first run"
    lp.assert_not_called()
    assert client.removed == [("R1", "UNREAD")]


def test_dry_run_has_no_side_effects(cfg: AppConfig, lp: MagicMock):
    msg = _msg("D1", "print", parts=[MessagePart(filename="doc.pdf", attachment_id="A1")])
    client = FakeClient([msg], {"A1": _b64url(b"x")})

    result = Manager(client=client, config=cfg).process_message("D1", dry_run=True)

    assert result.status is ProcessStatus.PLANNED
    assert result.intent is Intent.PRINT
    assert client.fetched == []
    assert client.removed == []
    lp.assert_not_called()


def test_fetch_failure_is_contained(cfg: AppConfig, lp: MagicMock):
    result = Manager(client=FakeClient(), config=cfg).process_message("missing")
    assert result.status is ProcessStatus.FAILED
    assert result.reason == "fetch failed"


def test_run_cycle_reports_every_message(cfg: AppConfig, lp: MagicMock):
    messages = [
        _msg("ok", "save", parts=[MessagePart(filename="ok.txt", attachment_id="A1")]),
        _msg("bad", "save", parts=[MessagePart(filename="bad.txt", attachment_id="A2")]),
        _msg("read", "save", labels=("CATEGORY_PERSONAL",)),
    ]
    client = FakeClient(messages, {"A1": _b64url(b"ok"), "A2": "%%%"})

    summary = Manager(client=client, config=cfg).run_cycle()

    by_id = {r.message_id: r.status for r in summary.results}
    assert by_id == {
        "ok": ProcessStatus.PROCESSED,
        "bad": ProcessStatus.FAILED,
        "read": ProcessStatus.SKIPPED,
    }
    assert summary.has_failures is True
    assert client.removed == [("ok", "UNREAD")]
    assert "1 processed" in summary.describe()


def test_run_cycle_survives_unexpected_errors(cfg: AppConfig, lp: MagicMock):
    client = FakeClient([_msg("x", "save")])
    client.get_message = MagicMock(side_effect=KeyError("boom"))

    summary = Manager(client=client, config=cfg).run_cycle()

    assert len(summary.results) == 1
    assert summary.results[0].status is ProcessStatus.FAILED
    assert summary.results[0].reason == "unexpected error"


def test_run_cycle_list_failure(cfg: AppConfig):
    client = FakeClient()
    client.list_error = TransportError("503")

    summary = Manager(client=client, config=cfg).run_cycle()

    assert summary.results == []
    assert summary.errors
    assert summary.has_failures is True


def test_run_forever_sleeps_between_cycles(cfg: AppConfig):
    client = FakeClient()
    mgr = Manager(client=client, config=cfg)
    sleeps: list[float] = []

    mgr.run_forever(interval=5, max_cycles=3, sleep=sleeps.append)

    assert sleeps == [5, 5]


def test_run_forever_keeps_polling_after_a_failed_cycle(cfg: AppConfig, monkeypatch: pytest.MonkeyPatch):
    mgr = Manager(client=FakeClient(), config=cfg)
    cycle = MagicMock(side_effect=[RuntimeError("connection reset"), None, None])
    monkeypatch.setattr(mgr, "run_cycle", cycle)
    sleeps: list[float] = []

    mgr.run_forever(interval=7, max_cycles=3, sleep=sleeps.append)

    assert cycle.call_count == 3
    assert sleeps == [7, 7]


def test_run_forever_rejects_zero_interval(cfg: AppConfig):
    mgr = Manager(client=FakeClient(), config=cfg)
    with pytest.raises(ValueError):
        mgr.run_forever(interval=0, max_cycles=1, sleep=lambda s: None)


def test_check_printer_warns_on_unknown(cfg: AppConfig, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr("mailprint.manager.accepting_printers", lambda: ["Other"])
    assert Manager(client=FakeClient(), config=cfg).check_printer() is False

    monkeypatch.setattr("mailprint.manager.accepting_printers", lambda: [PRINTER])
    assert Manager(client=FakeClient(), config=cfg).check_printer() is True
