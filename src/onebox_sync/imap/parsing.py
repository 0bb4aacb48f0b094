"""Helpers for parsing raw RFC 822 messages into internal models."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from onebox_sync.exceptions import ParseError
from onebox_sync.models import NO_SUBJECT, NormalizedEmail, RawMessage, email_id


def _header(message: EmailMessage, name: str) -> str:
    value = message.get(name)
    return str(value).strip() if value is not None else ""


def _parse_address_list(value: str) -> list[str]:
    if not value:
        return []
    # getaddresses returns list[(name, addr)]
    return [addr for _, addr in getaddresses([value]) if addr]


def _parse_date(value: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _part_text(part: EmailMessage) -> str:
    try:
        content = part.get_content()
    except (LookupError, UnicodeError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return str(content)


def _body(message: EmailMessage) -> str:
    for subtype in ("plain", "html"):
        part = message.get_body(preferencelist=(subtype,))
        if part is not None:
            text = _part_text(part).strip()
            if text:
                return text
    return ""


def _has_attachments(message: EmailMessage) -> bool:
    return any(part.is_attachment() for part in message.walk())


class Rfc822MessageParser:
    """Turns raw message bytes into a :class:`NormalizedEmail`."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def parse(self, raw: RawMessage) -> NormalizedEmail:
        """Parse one message.

        Subject defaults to ``(No Subject)``; the body is the text part,
        else the HTML part. A message without a Message-ID gets an id based
        on the ingestion time.

        Raises:
            ParseError: If the bytes are not a usable message.
        """
        if not raw.data.strip():
            raise ParseError(f"{raw.account_id} uid {raw.uid}: empty message")

        now = self._clock()
        try:
            message = BytesParser(policy=policy.default).parsebytes(raw.data)
            if not message.keys():
                raise ParseError(f"{raw.account_id} uid {raw.uid}: no headers")

            message_id = _header(message, "message-id")
            return NormalizedEmail(
                id=email_id(raw.account_id, message_id, fallback=now),
                account_id=raw.account_id,
                folder=raw.folder,
                subject=_header(message, "subject") or NO_SUBJECT,
                body=_body(message),
                from_=_header(message, "from"),
                to=_parse_address_list(_header(message, "to")),
                cc=_parse_address_list(_header(message, "cc")),
                bcc=_parse_address_list(_header(message, "bcc")),
                date=_parse_date(_header(message, "date")) or now,
                message_id=message_id,
                has_attachments=_has_attachments(message),
                indexed_at=now,
            )
        except ParseError:
            raise
        except (LookupError, TypeError, ValueError, UnicodeError) as exc:
            raise ParseError(f"{raw.account_id} uid {raw.uid}: {exc}") from exc
