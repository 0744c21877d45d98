"""Entry point for the mail listener package.

Usage::

    python -m mail_listener

All settings come from the environment (``IMAP_*``, ``LISTENER_*``,
``ATTACHMENTS_*``, ``PARSER_*``, ``RETRY_*``, ``SERVICE_*``).
"""

from __future__ import annotations

import asyncio
import sys

import structlog
from pydantic import ValidationError

from .models import Attachment, AttributesRecord, ParsedMail

logger = structlog.get_logger()


def _log_mail(mail: ParsedMail, message_id: int, attributes: AttributesRecord | None) -> None:
    logger.info(
        "mail_received",
        message_id=message_id,
        subject=mail.subject,
        from_address=mail.from_address,
        attachments=len(mail.attachments),
        flags=list(attributes.flags) if attributes else None,
    )


def _log_attachment(attachment: Attachment) -> None:
    logger.info("attachment_saved", file_name=attachment.generated_file_name, path=str(attachment.path))


def _log_error(error: BaseException) -> None:
    logger.error("listener_error", error_type=type(error).__name__, error=str(error))


def main() -> None:
    from .config import ServiceConfig
    from .events import ATTACHMENT, ERROR, MAIL
    from .service import ListenerService

    try:
        config = ServiceConfig()
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        sys.exit(1)

    service = ListenerService(config)
    service.listener.on(MAIL, _log_mail)
    service.listener.on(ATTACHMENT, _log_attachment)
    service.listener.on(ERROR, _log_error)
    asyncio.run(service.run())


if __name__ == "__main__":
    main()
