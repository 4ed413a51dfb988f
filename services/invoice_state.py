"""
Invoice State Machine

Two independent axes:

COMMERCIAL:    draft -> sent -> {paid | overdue} -> cancelled
               overdue -> paid, paid -> cancelled (correction)
TRANSMISSION:  pending -> {transmitted | failed}
               failed -> pending (retry)
               transmitted -> cancelled (protocol cancellation, new mark)

A transmission failure never touches the commercial axis. Every transition
appends an entry to the invoice's modification log.
"""

import uuid
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from models.invoice import (
    Invoice,
    InvoiceStatus,
    Modification,
    ModificationAction,
    TransmissionFailure,
    TransmissionStatus,
    utcnow,
)
from models.mydata import Acknowledgment, ProtocolError

logger = logging.getLogger(__name__)


COMMERCIAL_TRANSITIONS = {
    InvoiceStatus.DRAFT: {InvoiceStatus.SENT, InvoiceStatus.CANCELLED},
    InvoiceStatus.SENT: {InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED},
    InvoiceStatus.OVERDUE: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: {InvoiceStatus.CANCELLED},
    InvoiceStatus.CANCELLED: set(),
}

TRANSMISSION_TRANSITIONS = {
    TransmissionStatus.PENDING: {TransmissionStatus.TRANSMITTED, TransmissionStatus.FAILED},
    TransmissionStatus.FAILED: {TransmissionStatus.PENDING},
    TransmissionStatus.TRANSMITTED: {TransmissionStatus.CANCELLED},
    TransmissionStatus.CANCELLED: set(),
}

LOCKED_TRANSMISSION_STATES = {TransmissionStatus.TRANSMITTED, TransmissionStatus.CANCELLED}

# A claim older than this is treated as abandoned (process died mid-send)
TRANSMISSION_CLAIM_TTL = timedelta(minutes=5)


class InvalidTransitionError(Exception):
    """Requested transition is not allowed from the current state"""

    def __init__(self, message: str, current: Optional[str] = None, requested: Optional[str] = None):
        super().__init__(message)
        self.current = current
        self.requested = requested


class InvoiceLockedError(InvalidTransitionError):
    """Document is frozen: transmitted, cancelled, issued and awaiting transmission, or mid-send"""


def is_locked(invoice: Invoice) -> bool:
    return invoice.transmission_status in LOCKED_TRANSMISSION_STATES


def is_transmitting(invoice: Invoice, now: Optional[datetime] = None) -> bool:
    """A send is in flight and its claim has not expired"""
    info = invoice.acknowledgment
    if not info.claim_id or info.claimed_at is None:
        return False
    return (now or utcnow()) - info.claimed_at < TRANSMISSION_CLAIM_TTL


def missing_send_requirements(invoice: Invoice) -> List[str]:
    """Fields that block draft -> sent"""
    missing = []
    if not (invoice.counterpart and (invoice.counterpart.name or "").strip()):
        missing.append("counterpart.name")
    if not invoice.lines:
        missing.append("lines")
    return missing


class InvoiceStateMachine:
    """Validates and applies lifecycle transitions on one invoice"""

    def __init__(self, invoice: Invoice, actor: Optional[str] = None, clock=utcnow):
        self.invoice = invoice
        self.actor = actor or invoice.user_id
        self.clock = clock

    # --------------------------------------------------------
    # AUDIT
    # --------------------------------------------------------

    def _audit(self, action: ModificationAction, description: str):
        now = self.clock()
        self.invoice.modifications.append(Modification(
            date=now,
            action=action,
            user_id=self.actor,
            description=description
        ))
        self.invoice.updated_at = now

    def _move_commercial(self, target: InvoiceStatus):
        current = self.invoice.status
        if target not in COMMERCIAL_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Cannot move invoice {self.invoice.invoice_number} from {current.value} to {target.value}",
                current=current.value,
                requested=target.value
            )
        self.invoice.status = target

    def _move_transmission(self, target: TransmissionStatus):
        current = self.invoice.transmission_status
        if target not in TRANSMISSION_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Cannot move transmission of {self.invoice.invoice_number} "
                f"from {current.value} to {target.value}",
                current=current.value,
                requested=target.value
            )
        self.invoice.transmission_status = target

    # --------------------------------------------------------
    # EDIT GUARD
    # --------------------------------------------------------

    def _ensure_not_transmitting(self, requested: Optional[str] = None):
        if is_transmitting(self.invoice, self.clock()):
            raise InvoiceLockedError(
                f"Invoice {self.invoice.invoice_number} is being transmitted to myDATA",
                current=self.invoice.transmission_status.value,
                requested=requested
            )

    def ensure_editable(self):
        """
        Lines / counterpart may only change on drafts, or on documents whose
        transmission was rejected, and never while a send is in flight.
        """
        self._ensure_not_transmitting()
        if is_locked(self.invoice):
            raise InvoiceLockedError(
                f"Invoice {self.invoice.invoice_number} has been transmitted to myDATA and cannot be edited",
                current=self.invoice.transmission_status.value
            )
        if self.invoice.status == InvoiceStatus.CANCELLED:
            raise InvoiceLockedError(
                f"Invoice {self.invoice.invoice_number} is cancelled",
                current=self.invoice.status.value
            )
        if (self.invoice.status != InvoiceStatus.DRAFT
                and self.invoice.transmission_status != TransmissionStatus.FAILED):
            raise InvoiceLockedError(
                f"Invoice {self.invoice.invoice_number} is {self.invoice.status.value} "
                f"and awaiting myDATA transmission; it cannot be edited",
                current=self.invoice.status.value
            )

    def record_edit(self, description: str = "Invoice modified"):
        self.ensure_editable()
        self._audit(ModificationAction.MODIFIED, description)

    # --------------------------------------------------------
    # COMMERCIAL AXIS
    # --------------------------------------------------------

    def ensure_sendable(self):
        missing = missing_send_requirements(self.invoice)
        if missing:
            raise InvalidTransitionError(
                f"Invoice {self.invoice.invoice_number} cannot be sent, missing: {', '.join(missing)}",
                current=self.invoice.status.value,
                requested=InvoiceStatus.SENT.value
            )

    def issue(self):
        """draft -> sent"""
        self.ensure_sendable()
        self._move_commercial(InvoiceStatus.SENT)
        self._audit(ModificationAction.SENT, "Invoice issued")

    def record_payment(self, amount: Optional[float] = None, paid_date: Optional[datetime] = None,
                       method=None, info: Optional[str] = None, explicit: bool = True):
        """
        Register a payment.

        An explicit payment event marks the invoice paid; otherwise it only
        becomes paid once the recorded amount covers the total.
        """
        if self.invoice.status not in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE):
            raise InvalidTransitionError(
                f"Cannot record payment on a {self.invoice.status.value} invoice",
                current=self.invoice.status.value,
                requested=InvoiceStatus.PAID.value
            )

        total = self.invoice.totals.total_amount
        payment = self.invoice.payment
        if explicit:
            payment.amount = total if amount is None else amount
        else:
            payment.amount = round((payment.amount or 0) + (amount or 0), 2)
        payment.paid_date = paid_date or self.clock()
        if method is not None:
            payment.method = method
        if info:
            payment.info = info

        if explicit or (payment.amount or 0) >= total:
            self._move_commercial(InvoiceStatus.PAID)
            self._audit(ModificationAction.PAID, f"Payment received: €{payment.amount:.2f}")
        else:
            self._audit(ModificationAction.MODIFIED, f"Partial payment recorded: €{payment.amount:.2f}")

    def refresh_overdue(self, now: Optional[datetime] = None) -> bool:
        """sent -> overdue once the due date has passed. Returns True on change."""
        now = now or self.clock()
        invoice = self.invoice
        if invoice.status != InvoiceStatus.SENT or invoice.due_date is None or invoice.due_date >= now:
            return False
        self._move_commercial(InvoiceStatus.OVERDUE)
        self._audit(ModificationAction.OVERDUE, f"Due date {invoice.due_date.date().isoformat()} passed")
        return True

    def cancel_locally(self, reason: Optional[str] = None):
        """Local cancellation, only before the document reached myDATA"""
        self._ensure_not_transmitting(InvoiceStatus.CANCELLED.value)
        if is_locked(self.invoice):
            raise InvoiceLockedError(
                f"Invoice {self.invoice.invoice_number} has been transmitted to myDATA. Cancel it via myDATA instead.",
                current=self.invoice.transmission_status.value,
                requested=InvoiceStatus.CANCELLED.value
            )
        self._move_commercial(InvoiceStatus.CANCELLED)
        self._audit(ModificationAction.CANCELLED, reason or "Invoice cancelled")

    # --------------------------------------------------------
    # TRANSMISSION AXIS
    # --------------------------------------------------------

    def _claim(self):
        info = self.invoice.acknowledgment
        info.claim_id = uuid.uuid4().hex
        info.claimed_at = self.clock()

    def _release_claim(self):
        info = self.invoice.acknowledgment
        info.claim_id = None
        info.claimed_at = None

    def begin_transmission(self):
        """Enter pending before a send attempt (failed -> pending on retry)"""
        self._ensure_not_transmitting(TransmissionStatus.TRANSMITTED.value)
        current = self.invoice.transmission_status
        if current not in (TransmissionStatus.PENDING, TransmissionStatus.FAILED):
            raise InvalidTransitionError(
                f"Invoice {self.invoice.invoice_number} is already {current.value} in myDATA",
                current=current.value,
                requested=TransmissionStatus.PENDING.value
            )
        if current == TransmissionStatus.FAILED:
            self._move_transmission(TransmissionStatus.PENDING)
            self._audit(ModificationAction.TRANSMISSION_RETRY, "Retrying myDATA transmission")
        self._claim()

    def mark_transmitted(self, acknowledgment: Acknowledgment, qr_code: Optional[str] = None):
        if not (acknowledgment.mark and acknowledgment.uid and acknowledgment.authentication_code):
            raise InvalidTransitionError(
                "Acknowledgment must carry mark, uid and authentication code",
                current=self.invoice.transmission_status.value,
                requested=TransmissionStatus.TRANSMITTED.value
            )
        self._move_transmission(TransmissionStatus.TRANSMITTED)
        info = self.invoice.acknowledgment
        info.mark = acknowledgment.mark
        info.uid = acknowledgment.uid
        info.authentication_code = acknowledgment.authentication_code
        info.qr_code = qr_code
        info.transmitted_at = self.clock()
        info.transmission_failure = None
        info.errors = []
        self._release_claim()
        self._audit(ModificationAction.TRANSMITTED, f"Transmitted to myDATA with mark: {acknowledgment.mark}")

    def mark_failed(self, errors: List[ProtocolError],
                    failure: TransmissionFailure = TransmissionFailure.VALIDATION):
        """Protocol rejection: terminal for this attempt, errors kept verbatim"""
        self._move_transmission(TransmissionStatus.FAILED)
        self.invoice.acknowledgment.transmission_failure = failure
        self.invoice.acknowledgment.errors = list(errors)
        self._release_claim()
        summary = "; ".join(f"{e.code}: {e.message}" for e in errors) or failure.value
        self._audit(ModificationAction.TRANSMISSION_FAILED, f"myDATA rejected invoice: {summary}")

    def note_transient_failure(self, failure: TransmissionFailure):
        """Network / auth trouble: no transition, the invoice stays pending"""
        self.invoice.acknowledgment.transmission_failure = failure
        self._release_claim()
        self.invoice.updated_at = self.clock()

    def apply_protocol_cancellation(self, cancellation_mark: str, reason: Optional[str] = None):
        """transmitted -> cancelled, recording the new cancellation mark"""
        if self.invoice.transmission_status != TransmissionStatus.TRANSMITTED:
            raise InvalidTransitionError(
                "Only invoices transmitted to myDATA can be cancelled in myDATA",
                current=self.invoice.transmission_status.value,
                requested=TransmissionStatus.CANCELLED.value
            )
        if not cancellation_mark:
            raise InvalidTransitionError("Cancellation requires the cancellation mark issued by myDATA")

        self._move_transmission(TransmissionStatus.CANCELLED)
        if self.invoice.status != InvoiceStatus.CANCELLED:
            self._move_commercial(InvoiceStatus.CANCELLED)
        self.invoice.acknowledgment.cancellation_mark = cancellation_mark
        self.invoice.acknowledgment.cancelled_at = self.clock()
        description = f"Cancelled in myDATA with cancellation mark: {cancellation_mark}"
        if reason:
            description = f"{description} ({reason})"
        self._audit(ModificationAction.CANCELLED, description)


def check_acknowledgment_invariant(invoice: Invoice) -> Optional[str]:
    """Transmitted documents carry the full triple; others never claim transmission"""
    info = invoice.acknowledgment
    has_triple = bool(info.mark and info.uid and info.authentication_code)
    if invoice.transmission_status == TransmissionStatus.TRANSMITTED and not has_triple:
        return "Transmitted invoice is missing mark, uid or authentication code"
    return None
