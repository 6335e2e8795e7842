from __future__ import annotations

from typing import Sequence

from imapclient.exceptions import IMAPClientError

from ach_exporter.json_logger import JsonLogger, log_event
from ach_exporter.mfa.mailbox import MailboxSession, MailboxUnavailable, scan_mailbox
from ach_exporter.mfa.models import CodeMatch, SearchSpec

__all__ = ["find_code"]


def find_code(
    mailboxes: Sequence[str],
    spec: SearchSpec,
    *,
    session: MailboxSession,
    logger: JsonLogger,
) -> CodeMatch | None:
    """Scan ``mailboxes`` in order and return the first code found.

    A folder that does not exist on the account counts as empty. A broken
    connection drops the session so the next folder logs in again.
    """

    for mailbox in mailboxes:
        mailbox_logger = logger.bind(mailbox=mailbox)
        try:
            match = scan_mailbox(session.client(), mailbox, spec, logger=mailbox_logger)
        except MailboxUnavailable as exc:
            log_event(
                logger=mailbox_logger,
                phase="mfa",
                status="warn",
                message="Mailbox unavailable; skipping",
                error=str(exc),
            )
            continue
        except (IMAPClientError, OSError) as exc:
            log_event(
                logger=mailbox_logger,
                phase="mfa",
                status="warn",
                message="Mailbox connection failed; reconnecting for next mailbox",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            session.reset()
            continue
        if match is not None:
            return match
    return None
