"""Handler that sends a plain-text mail built from task variables."""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import getaddresses

from robot_worker.config import MailSettings
from robot_worker.engine.models import ExternalTask
from robot_worker.errors import StartupConfigError
from robot_worker.worker.outcomes import Completed, Outcome, incident_from_exception

logger = logging.getLogger(__name__)


class SendMailHandler:
    """Send mail using the ``from``, ``to``, ``cc``, ``subject`` and ``body`` variables.

    ``to`` and ``cc`` may hold comma separated address lists; ``cc`` is optional.
    """

    def __init__(self, settings: MailSettings) -> None:
        if not settings.smtp_host:
            raise StartupConfigError("ROBOT_WORKER_MAIL_SMTP_HOST is required for send-mail")
        if not settings.smtp_user or not settings.smtp_password:
            raise StartupConfigError(
                "ROBOT_WORKER_MAIL_SMTP_USER and ROBOT_WORKER_MAIL_SMTP_PASSWORD are required "
                "for send-mail",
            )
        self.settings = settings

    def execute(self, task: ExternalTask) -> Outcome:
        logger.info(
            "Handling external task (Task ID: %s - Process Instance ID %s)",
            task.id,
            task.process_instance_id,
        )
        cc = task.variable("cc")
        subject = task.variable("subject")
        to = task.variable("to")
        logger.info(
            "Sending mail with subject '%s' to '%s'%s",
            subject,
            to,
            f" (cc: '{cc}')" if cc else "",
        )
        try:
            message = build_message(task)
            self.send(message)
        except (smtplib.SMTPException, OSError, ValueError) as error:
            logger.error("Sending mail for task %s failed: %s", task.id, error)
            return incident_from_exception("Send Mail Failed", error)
        return Completed()

    def send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(
            self.settings.smtp_host,
            self.settings.smtp_port,
            timeout=self.settings.timeout_seconds,
        ) as smtp:
            if self.settings.starttls:
                smtp.starttls(context=ssl.create_default_context())
            smtp.login(self.settings.smtp_user, self.settings.smtp_password)
            smtp.send_message(message)


def build_message(task: ExternalTask) -> EmailMessage:
    """Assemble the mail; raises ``ValueError`` when a required variable is missing."""

    missing = [name for name in ("from", "to", "subject", "body") if not task.variable(name)]
    if missing:
        raise ValueError(f"Missing mail variables: {', '.join(missing)}")

    message = EmailMessage()
    message["From"] = str(task.variable("from"))
    message["To"] = _address_list(str(task.variable("to")))
    cc = task.variable("cc")
    if cc:
        message["Cc"] = _address_list(str(cc))
    message["Subject"] = str(task.variable("subject"))
    message.set_content(str(task.variable("body")))
    return message


def _address_list(raw: str) -> str:
    addresses = [address for _, address in getaddresses([raw]) if address]
    if not addresses:
        raise ValueError(f"No valid mail address in {raw!r}")
    return ", ".join(addresses)
