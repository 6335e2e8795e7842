from __future__ import annotations

import asyncio
import contextlib
import functools
import socket
import ssl
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from email import message_from_bytes, policy
from email.message import EmailMessage
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Iterable, List, Sequence

from imapclient import IMAPClient, SocketTimeout
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError

from ach_exporter.config import ImapSettings
from ach_exporter.json_logger import JsonLogger, log_event
from ach_exporter.mfa.extractor import extract_code
from ach_exporter.mfa.models import CandidateMessage, CodeMatch, SearchSpec

__all__ = [
    "MailboxSession",
    "MailboxUnavailable",
    "build_search_ladder",
    "fetch_candidate",
    "scan_mailbox",
    "tls_preflight",
]

FETCH_ITEMS = [b"INTERNALDATE", b"FLAGS", b"BODY.PEEK[]"]
SEEN_FLAG = b"\\Seen"
TLS_VERSIONS = {
    "TLSv1": ssl.TLSVersion.TLSv1,
    "TLSv1.1": ssl.TLSVersion.TLSv1_1,
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}


class MailboxUnavailable(RuntimeError):
    """Raised when a folder cannot be opened on this account."""


class MailboxSession:
    """One lazily connected IMAP login, dropped and rebuilt after connection errors.

    Blocking work goes through :meth:`call`, which runs it on the session's
    single worker thread. Each thread holds its own connection, so a search
    abandoned by :meth:`abandon` keeps its socket to itself and logs out on
    its own thread once it returns.
    """

    def __init__(
        self,
        settings: ImapSettings,
        *,
        client_factory: Callable[..., Any] = IMAPClient,
    ) -> None:
        self.settings = settings
        self._client_factory = client_factory
        self._local = threading.local()
        self._worker = _new_worker()

    def _ssl_context(self) -> ssl.SSLContext | None:
        if not self.settings.secure:
            return None
        context = ssl.create_default_context()
        context.minimum_version = TLS_VERSIONS[self.settings.tls_min_version]
        return context

    def client(self) -> Any:
        client = getattr(self._local, "client", None)
        if client is None:
            client = self._client_factory(
                self.settings.host,
                port=self.settings.port,
                ssl=self.settings.secure,
                ssl_context=self._ssl_context(),
                timeout=SocketTimeout(
                    connect=self.settings.connect_timeout_s,
                    read=self.settings.socket_timeout_s,
                ),
            )
            # Keep INTERNALDATE timezone-aware.
            client.normalise_times = False
            try:
                client.login(self.settings.username, self.settings.password)
            except Exception:
                _quiet_logout(client)
                raise
            self._local.client = client
        return client

    def reset(self) -> None:
        client = getattr(self._local, "client", None)
        self._local.client = None
        if client is not None:
            _quiet_logout(client)

    close = reset

    async def call(self, func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._worker, functools.partial(func, *args, **kwargs))

    def abandon(self) -> None:
        """Leave in-flight work to its thread and start later calls on a fresh one."""

        stale, self._worker = self._worker, _new_worker()
        _retire(stale, self.reset)

    def release(self) -> None:
        """Log out on the worker thread after whatever it is running, without waiting."""

        _retire(self._worker, self.reset)

    def __enter__(self) -> "MailboxSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _new_worker() -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=1, thread_name_prefix="imap")


def _retire(worker: ThreadPoolExecutor, cleanup: Callable[[], None]) -> None:
    with contextlib.suppress(RuntimeError):
        worker.submit(cleanup)
    worker.shutdown(wait=False)


def _quiet_logout(client: Any) -> None:
    try:
        client.logout()
    except (IMAPClientError, OSError):
        pass


# ── Search ladder ────────────────────────────────────────────────────────────


def _since_criterion(spec: SearchSpec) -> date:
    # SINCE only has day granularity in the server's timezone; widen by a day
    # and leave the exact cutoff to the per-message gate.
    return (spec.cutoff - timedelta(days=1)).date()


def build_search_ladder(spec: SearchSpec) -> List[List[Any]]:
    """Return search criteria from narrowest to broadest, without duplicates."""

    since: List[Any] = ["SINCE", _since_criterion(spec)]
    subject: List[Any] = ["SUBJECT", spec.subject_pattern] if spec.subject_pattern else []
    sender: List[Any] = ["FROM", spec.sender_pattern] if spec.sender_pattern else []
    unseen: List[Any] = ["UNSEEN"] if spec.unseen_only else []

    rungs = [
        since + subject + sender + unseen,
        since + subject + sender,
        since + subject,
        since,
    ]
    ladder: List[List[Any]] = []
    for rung in rungs:
        if rung not in ladder:
            ladder.append(rung)
    return ladder


def _needs_charset(criteria: Iterable[Any]) -> bool:
    return any(isinstance(item, str) and not item.isascii() for item in criteria)


def _search_candidates(
    client: Any,
    mailbox: str,
    spec: SearchSpec,
    folder_info: Dict[bytes, Any],
    *,
    logger: JsonLogger,
) -> tuple[list[int], str]:
    for index, criteria in enumerate(build_search_ladder(spec)):
        try:
            uids = client.search(criteria, charset="UTF-8" if _needs_charset(criteria) else None)
        except IMAPClientAbortError:
            raise
        except IMAPClientError as exc:
            log_event(
                logger=logger,
                phase="mfa",
                status="warn",
                message="Mailbox search failed; relaxing filters",
                mailbox=mailbox,
                rung=index,
                error=str(exc),
            )
            continue
        if uids:
            return list(uids), f"search:{index}"

    uid_next = folder_info.get(b"UIDNEXT")
    if uid_next:
        newest = int(uid_next) - 1
        return list(range(newest, max(0, newest - spec.max_scan), -1)), "uidnext_tail"

    try:
        uids = client.search(["ALL"])
    except IMAPClientAbortError:
        raise
    except IMAPClientError:
        return [], "none"
    return sorted(uids)[-spec.max_scan:], "all_tail"


# ── Message parsing ──────────────────────────────────────────────────────────


def _part_text(part: EmailMessage | None) -> str:
    if part is None:
        return ""
    try:
        content = part.get_content()
    except (LookupError, UnicodeError, ValueError, KeyError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return content if isinstance(content, str) else ""


def _as_aware(value: Any) -> datetime | None:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _received_at(internal_date: Any, message: EmailMessage) -> datetime | None:
    received = _as_aware(internal_date)
    if received is not None:
        return received
    header = message.get("Date")
    if not header:
        return None
    try:
        return _as_aware(parsedate_to_datetime(str(header)))
    except (TypeError, ValueError):
        return None


def fetch_candidate(client: Any, mailbox: str, uid: int) -> CandidateMessage | None:
    """Fetch one message without marking it read. ``None`` when it vanished."""

    response = client.fetch([uid], FETCH_ITEMS)
    data = response.get(uid)
    if not data:
        return None
    raw = data.get(b"BODY[]") or b""
    message = message_from_bytes(raw, policy=policy.default)
    flags = tuple(data.get(b"FLAGS") or ())
    message_id = str(message.get("Message-ID") or "").strip() or None
    return CandidateMessage(
        mailbox=mailbox,
        uid=uid,
        message_id=message_id,
        received_at=_received_at(data.get(b"INTERNALDATE"), message),
        sender=str(message.get("From") or ""),
        subject=str(message.get("Subject") or ""),
        text_body=_part_text(message.get_body(preferencelist=("plain",))),
        html_body=_part_text(message.get_body(preferencelist=("html",))),
        raw_source=raw,
        seen=SEEN_FLAG in flags or "\\Seen" in flags,
    )


def _rejection_reason(candidate: CandidateMessage, spec: SearchSpec) -> str | None:
    if candidate.received_at is None:
        return "no_timestamp"
    if candidate.received_at < spec.cutoff:
        return "too_old"
    if spec.unseen_only and candidate.seen:
        return "seen"
    if spec.sender_pattern and spec.sender_pattern.lower() not in candidate.sender.lower():
        return "sender"
    if spec.is_excluded(candidate.ref):
        return "rejected_earlier"
    return None


# ── Scanner ──────────────────────────────────────────────────────────────────


def scan_mailbox(
    client: Any,
    mailbox: str,
    spec: SearchSpec,
    *,
    logger: JsonLogger,
) -> CodeMatch | None:
    """Return the newest acceptable code in ``mailbox`` or ``None``.

    Connection-level failures propagate; a single unreadable message is
    skipped.
    """

    try:
        folder_info = client.select_folder(mailbox, readonly=True)
    except IMAPClientAbortError:
        raise
    except IMAPClientError as exc:
        raise MailboxUnavailable(f"cannot open mailbox {mailbox!r}: {exc}") from exc

    uids, strategy = _search_candidates(client, mailbox, spec, folder_info or {}, logger=logger)
    ordered: Sequence[int] = sorted(set(uids), reverse=True)[: spec.max_scan]
    skipped: Dict[str, int] = {}

    for uid in ordered:
        try:
            candidate = fetch_candidate(client, mailbox, uid)
            reason = _rejection_reason(candidate, spec) if candidate is not None else None
        except (IMAPClientAbortError, OSError):
            raise
        except Exception as exc:
            # Malformed headers surface as assorted errors from the email parser.
            skipped["fetch_error"] = skipped.get("fetch_error", 0) + 1
            log_event(
                logger=logger,
                phase="mfa",
                status="warn",
                message="Skipping unreadable message",
                mailbox=mailbox,
                uid=uid,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            continue
        if candidate is None:
            continue
        if reason:
            skipped[reason] = skipped.get(reason, 0) + 1
            continue

        result = extract_code(
            candidate.subject,
            candidate.text_body,
            candidate.html_body,
            candidate.raw_source,
            spec.code_pattern,
            spec.code_length,
        )
        if result.code and result.source_field is not None:
            match = CodeMatch(
                code=result.code,
                ref=candidate.ref,
                received_at=candidate.received_at,
                source_field=result.source_field,
            )
            log_event(
                logger=logger,
                phase="mfa",
                message="2FA code found",
                strategy=strategy,
                candidates=len(ordered),
                **match.describe(),
            )
            return match
        skipped["no_code"] = skipped.get("no_code", 0) + 1

    log_event(
        logger=logger,
        phase="mfa",
        message="No code in mailbox",
        mailbox=mailbox,
        strategy=strategy,
        candidates=len(ordered),
        skipped=skipped,
        cutoff=spec.cutoff.isoformat(),
    )
    return None


def tls_preflight(settings: ImapSettings) -> Dict[str, Any]:
    """Open a bare TLS connection to the IMAP server and report what was negotiated."""

    context = ssl.create_default_context()
    context.minimum_version = TLS_VERSIONS[settings.tls_min_version]
    server_name = settings.tls_servername or settings.host
    with socket.create_connection((settings.host, settings.port), timeout=settings.connect_timeout_s) as sock:
        with context.wrap_socket(sock, server_hostname=server_name) as tls:
            cipher = tls.cipher()
            return {
                "host": settings.host,
                "port": settings.port,
                "server_name": server_name,
                "protocol": tls.version(),
                "cipher": cipher[0] if cipher else None,
            }
