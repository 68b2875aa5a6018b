"""
Scheduled email dispatch.

One call to DispatchEngine.run_once() is one bounded pass over the
emails that are due: status scheduled and scheduled_date <= now. The
pass is meant to be fired by an external scheduler (cron, Cloud
Scheduler, the /api/tasks/send-scheduled endpoint) and may overlap with
another pass.

Each due email is handled in its own transactions:

1. Claim: a conditional UPDATE stamps a claim token on the row only if
   it is still scheduled and unclaimed. A run that loses the race
   skips the email, so no email is delivered twice.
2. Deliver through the mail transport, or fail straight away when the
   contact has no email address. If loading the email fails before
   anything is sent, the claim is released for a later run.
3. Finish: a second conditional UPDATE, keyed on the claim token, moves
   the email to sent or failed.

A failure on one email never stops the others in the same pass. Sent
and failed are terminal here; there is no automatic retry.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .config import config
from .database import SessionFactory, get_db
from .errors import SynergyError, TransportError
from .models import Contact, EmailStatus, FollowUpEmail, User, to_utc, utcnow
from .transport import MailTransport, get_transport

logger = logging.getLogger(__name__)

MISSING_ADDRESS_REASON = "Missing recipient email address"


@dataclass
class DispatchResult:
    """Outcome for one email in a dispatch pass."""
    email_id: str
    status: str  # sent, failed or skipped
    recipient: Optional[str] = None
    contact_name: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.email_id,
            "status": self.status,
            "email": self.recipient,
            "contact": self.contact_name,
            "reason": self.reason,
        }


@dataclass
class DispatchReport:
    """Summary of one dispatch pass."""
    started_at: datetime
    results: list[DispatchResult] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def processed(self) -> int:
        return self._count("sent") + self._count("failed")

    @property
    def sent(self) -> int:
        return self._count("sent")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    def to_dict(self) -> dict:
        return {
            "success": True,
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class _Delivery:
    """Everything needed to send one email, read while the row is claimed."""
    subject: str
    body: str
    recipient: Optional[str]
    contact_name: str
    sender_name: Optional[str]
    reply_to: Optional[str]


class DispatchEngine:
    """Finds due scheduled emails and delivers each one at most once."""

    def __init__(
        self,
        transport: Optional[MailTransport] = None,
        session_factory: Optional[SessionFactory] = None,
        batch_limit: Optional[int] = None,
    ):
        self._transport = transport
        self.session_factory = session_factory
        self.batch_limit = batch_limit or config.DISPATCH_BATCH_LIMIT

    @property
    def transport(self) -> MailTransport:
        if self._transport is None:
            self._transport = get_transport()
        return self._transport

    def find_due(self, now: datetime) -> list[str]:
        """IDs of eligible, unclaimed emails, oldest schedule first."""
        with get_db(self.session_factory) as db:
            rows = (
                db.query(FollowUpEmail.id)
                .filter(
                    FollowUpEmail.status == EmailStatus.SCHEDULED,
                    FollowUpEmail.scheduled_date <= now,
                    FollowUpEmail.claim_token.is_(None),
                )
                .order_by(FollowUpEmail.scheduled_date.asc(), FollowUpEmail.id)
                .limit(self.batch_limit)
                .all()
            )
        return [row[0] for row in rows]

    def run_once(self, now: Optional[datetime] = None) -> DispatchReport:
        """Run one scan-and-send pass and report what happened."""
        now = to_utc(now) if now else utcnow()
        report = DispatchReport(started_at=now)

        due = self.find_due(now)
        logger.info(f"Found {len(due)} emails to send")

        for email_id in due:
            try:
                result = self._process(email_id, now)
            except SynergyError as e:
                # Failures before the send release the claim, so the email
                # is picked up again by a later run
                logger.error(f"Dispatch of email {email_id} aborted: {e.message}")
                result = DispatchResult(email_id, "skipped", reason=e.message)
            report.results.append(result)

        logger.info(
            f"Dispatch finished: {report.sent} sent, {report.failed} failed, "
            f"{report.skipped} skipped"
        )
        return report

    def _claim(self, email_id: str, now: datetime) -> Optional[str]:
        token = str(uuid.uuid4())
        with get_db(self.session_factory) as db:
            claimed = (
                db.query(FollowUpEmail)
                .filter(
                    FollowUpEmail.id == email_id,
                    FollowUpEmail.status == EmailStatus.SCHEDULED,
                    FollowUpEmail.scheduled_date <= now,
                    FollowUpEmail.claim_token.is_(None),
                )
                .update(
                    {FollowUpEmail.claim_token: token, FollowUpEmail.claimed_at: utcnow()},
                    synchronize_session=False,
                )
            )
        return token if claimed == 1 else None

    def _release(self, email_id: str, token: str) -> None:
        with get_db(self.session_factory) as db:
            released = (
                db.query(FollowUpEmail)
                .filter(
                    FollowUpEmail.id == email_id,
                    FollowUpEmail.claim_token == token,
                )
                .update(
                    {FollowUpEmail.claim_token: None, FollowUpEmail.claimed_at: None},
                    synchronize_session=False,
                )
            )
        if released == 1:
            logger.info(f"Released claim on email {email_id}")

    def _load(self, email_id: str) -> _Delivery:
        with get_db(self.session_factory) as db:
            email, contact, user = (
                db.query(FollowUpEmail, Contact, User)
                .join(Contact, FollowUpEmail.contact_id == Contact.id)
                .join(User, Contact.user_id == User.id)
                .filter(FollowUpEmail.id == email_id)
                .one()
            )
            return _Delivery(
                subject=email.subject,
                body=email.body,
                recipient=contact.email if contact.has_email else None,
                contact_name=contact.name,
                sender_name=user.full_name,
                reply_to=user.sender_email,
            )

    def _finish(
        self,
        email_id: str,
        token: str,
        status: EmailStatus,
        error_message: Optional[str] = None,
    ) -> bool:
        values = {
            FollowUpEmail.status: status,
            FollowUpEmail.error_message: error_message,
            FollowUpEmail.updated_at: utcnow(),
        }
        if status == EmailStatus.SENT:
            values[FollowUpEmail.sent_at] = utcnow()

        with get_db(self.session_factory) as db:
            finished = (
                db.query(FollowUpEmail)
                .filter(
                    FollowUpEmail.id == email_id,
                    FollowUpEmail.claim_token == token,
                    FollowUpEmail.status == EmailStatus.SCHEDULED,
                )
                .update(values, synchronize_session=False)
            )
        if finished != 1:
            logger.warning(f"Email {email_id} changed while being delivered, status not updated")
        return finished == 1

    def _process(self, email_id: str, now: datetime) -> DispatchResult:
        token = self._claim(email_id, now)
        if token is None:
            logger.info(f"Email {email_id} already claimed by another run, skipping")
            return DispatchResult(email_id, "skipped", reason="Already claimed")

        try:
            delivery = self._load(email_id)
        except Exception:
            # Nothing was sent; hand the email back to the next run
            self._release(email_id, token)
            raise

        if not delivery.recipient:
            logger.warning(f"Contact for email {email_id} has no email address")
            self._finish(email_id, token, EmailStatus.FAILED, MISSING_ADDRESS_REASON)
            return DispatchResult(
                email_id, "failed",
                contact_name=delivery.contact_name,
                reason=MISSING_ADDRESS_REASON,
            )

        try:
            self.transport.send(
                to=delivery.recipient,
                subject=delivery.subject,
                body=delivery.body,
                sender_name=delivery.sender_name,
                reply_to=delivery.reply_to,
            )
        except TransportError as e:
            logger.error(f"Failed to send email {email_id}: {e.message}")
            self._finish(email_id, token, EmailStatus.FAILED, e.message)
            return DispatchResult(
                email_id, "failed",
                recipient=delivery.recipient,
                contact_name=delivery.contact_name,
                reason=e.message,
            )
        except Exception as e:
            logger.exception(f"Unexpected error sending email {email_id}")
            self._finish(email_id, token, EmailStatus.FAILED, str(e))
            return DispatchResult(
                email_id, "failed",
                recipient=delivery.recipient,
                contact_name=delivery.contact_name,
                reason=str(e),
            )

        self._finish(email_id, token, EmailStatus.SENT)
        logger.info(f"Email sent to {delivery.recipient}")
        return DispatchResult(
            email_id, "sent",
            recipient=delivery.recipient,
            contact_name=delivery.contact_name,
        )


def send_scheduled_emails(
    transport: Optional[MailTransport] = None,
    session_factory: Optional[SessionFactory] = None,
) -> DispatchReport:
    """Entry point for the external scheduler: one dispatch pass."""
    return DispatchEngine(transport=transport, session_factory=session_factory).run_once()
