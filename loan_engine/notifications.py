"""
Notification Module

SMS notifications for loan events, delivered through an outbox.

Lifecycle operations enqueue a notification intent inside the same atomic
unit as the state change. After the unit commits the dispatcher renders the
message and hands it to a gateway. Delivery failures are logged and recorded
on the intent; they never propagate to the operation that produced them.
"""

import re
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, Future
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum
from threading import Lock

import httpx

from .clock import Clock, SystemClock
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_engine.notifications")


class NotificationKind(Enum):
    """Loan events that notify the borrower"""
    NEW_LOAN = "new_loan"
    PAYMENT_RECEIVED = "payment_received"
    LOAN_SETTLED = "loan_settled"
    LOAN_COMPLETED = "loan_completed"
    LOAN_RENEWED = "loan_renewed"


class NotificationStatus(Enum):
    """Delivery status of an outbox entry"""
    PENDING = "pending"     # Committed, not yet handed to a gateway
    SENDING = "sending"     # Claimed by a dispatcher
    SENT = "sent"           # Gateway accepted the message
    FAILED = "failed"       # Gateway refused or errored; may be retried


TEMPLATES: Dict[NotificationKind, str] = {
    NotificationKind.NEW_LOAN: (
        "New loan {display_id} approved\n"
        "Amount: {principal}\n"
        "Interest: {rate30}%\n"
        "Duration: {duration}\n"
        "Payment: {frequency}"
    ),
    NotificationKind.PAYMENT_RECEIVED: (
        "LoanId: {display_id}\n"
        "Today Paid: {amount}\n"
        "Balance: {outstanding}\n"
        "Thank you!"
    ),
    NotificationKind.LOAN_SETTLED: (
        "Loan {display_id} settled\n"
        "Balance: 0\n"
        "Thank you!"
    ),
    NotificationKind.LOAN_COMPLETED: (
        "Loan {display_id} completed\n"
        "Balance: 0\n"
        "Thank you!"
    ),
    NotificationKind.LOAN_RENEWED: (
        "Loan {display_id} renewed\n"
        "Amount: {outstanding_amount}\n"
        "New loan: {new_display_id}"
    ),
}


def render_message(kind: NotificationKind, params: Dict[str, Any]) -> str:
    return TEMPLATES[kind].format(**params)


def format_phone_number(phone_number: Optional[str], country_code: str = "94") -> Optional[str]:
    """
    Normalize a phone number to international digits, e.g. 0771234567 ->
    94771234567. Returns None when no digits remain.
    """
    if not phone_number:
        return None
    cleaned = re.sub(r"\D", "", phone_number)
    if not cleaned:
        return None
    if cleaned.startswith("0"):
        cleaned = country_code + cleaned[1:]
    if not cleaned.startswith(country_code):
        cleaned = country_code + cleaned
    return cleaned


@dataclass
class NotificationIntent(StorageRecord):
    """Outbox entry: one message to one customer"""
    kind: NotificationKind
    recipient_id: str
    loan_id: str
    params: Dict[str, Any] = field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'kind': self.kind.value,
            'recipient_id': self.recipient_id,
            'loan_id': self.loan_id,
            'params': dict(self.params),
            'status': self.status.value,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationIntent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            kind=NotificationKind(data['kind']),
            recipient_id=data['recipient_id'],
            loan_id=data['loan_id'],
            params=data.get('params') or {},
            status=NotificationStatus(data['status']),
            attempts=data.get('attempts', 0),
            last_error=data.get('last_error'),
            sent_at=datetime.fromisoformat(data['sent_at']) if data.get('sent_at') else None,
        )


class NotificationOutbox:
    """Durable queue of notification intents"""

    TABLE = "notification_outbox"

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()

    def enqueue(self, kind: NotificationKind, recipient_id: str, loan_id: str,
                params: Dict[str, Any]) -> NotificationIntent:
        """Record an intent; joins the caller's atomic unit"""
        now = self.clock.now()
        intent = NotificationIntent(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            kind=kind,
            recipient_id=recipient_id,
            loan_id=loan_id,
            params={k: str(v) for k, v in params.items()}
        )
        self.storage.save(self.TABLE, intent.id, intent.to_dict())
        return intent

    def get(self, intent_id: str) -> Optional[NotificationIntent]:
        data = self.storage.load(self.TABLE, intent_id)
        return NotificationIntent.from_dict(data) if data else None

    def save(self, intent: NotificationIntent) -> None:
        intent.updated_at = self.clock.now()
        self.storage.save(self.TABLE, intent.id, intent.to_dict())

    def with_status(self, status: NotificationStatus) -> List[NotificationIntent]:
        return [NotificationIntent.from_dict(data)
                for data in self.storage.find(self.TABLE, {'status': status.value})]

    def for_loan(self, loan_id: str) -> List[NotificationIntent]:
        return [NotificationIntent.from_dict(data)
                for data in self.storage.find(self.TABLE, {'loan_id': loan_id})]

    def claim(self, intent_id: str, from_statuses: Iterable[NotificationStatus]) -> Optional[NotificationIntent]:
        """Move an intent to SENDING if it is still in one of ``from_statuses``"""
        with self.storage.atomic():
            intent = self.get(intent_id)
            if intent is None or intent.status not in set(from_statuses):
                return None
            intent.status = NotificationStatus.SENDING
            intent.attempts += 1
            self.save(intent)
            return intent


class NotificationGateway(ABC):
    """Transport for a rendered message"""

    @abstractmethod
    def send(self, phone: str, message: str) -> bool:
        """Deliver one message. Returns True if the provider accepted it."""
        pass

    def close(self) -> None:
        pass


class LogGateway(NotificationGateway):
    """Logs messages instead of sending them; for development"""

    def __init__(self):
        self.sent: List[tuple] = []

    def send(self, phone: str, message: str) -> bool:
        logger.info(f"SMS to {phone}: {message!r}")
        self.sent.append((phone, message))
        return True


class SMSGateway(NotificationGateway):
    """HTTP client for a Text.lk style SMS API"""

    def __init__(
        self,
        api_url: str,
        api_token: str,
        sender_id: str = "TextLKDemo",
        country_code: str = "94",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None
    ):
        self.api_url = api_url
        self.api_token = api_token
        self.sender_id = sender_id
        self.country_code = country_code
        self._client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_config(cls, config) -> 'SMSGateway':
        return cls(
            api_url=config.sms_api_url,
            api_token=config.sms_api_token,
            sender_id=config.sms_sender_id,
            country_code=config.sms_country_code,
            timeout=config.sms_timeout
        )

    def send(self, phone: str, message: str) -> bool:
        """POST one message; True only when the API answers status=success"""
        recipient = format_phone_number(phone, self.country_code)
        if not recipient:
            logger.warning(f"Invalid phone number {phone!r}, SMS not sent")
            return False
        if not self.api_token:
            logger.warning("SMS API token not configured, SMS not sent")
            return False

        payload = {
            "api_token": self.api_token,
            "recipient": recipient,
            "sender_id": self.sender_id,
            "type": "plain",
            "message": message,
        }

        try:
            response = self._client.post(
                self.api_url,
                json=payload,
                headers={"Accept": "application/json"}
            )
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"SMS request to {recipient} failed: {e}")
            return False
        except ValueError:
            logger.error(f"SMS API returned a non-JSON response ({response.status_code})")
            return False

        if data.get("status") == "success":
            return True

        logger.error(f"SMS API rejected message to {recipient}: {data.get('message', data)}")
        return False

    def close(self) -> None:
        """Close the HTTP client"""
        self._client.close()


class NotificationDispatcher:
    """
    Renders outbox intents and hands them to a gateway.

    With ``async_dispatch`` the work runs on a single background thread so
    that callers return as soon as their unit has committed; otherwise
    ``schedule`` dispatches inline.
    """

    def __init__(
        self,
        outbox: NotificationOutbox,
        gateway: NotificationGateway,
        customers,
        async_dispatch: bool = True,
        max_attempts: int = 3,
        enabled: bool = True
    ):
        self.outbox = outbox
        self.gateway = gateway
        self.customers = customers
        self.async_dispatch = async_dispatch
        self.max_attempts = max_attempts
        self.enabled = enabled
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []
        self._lock = Lock()

    @classmethod
    def from_config(cls, config, outbox: NotificationOutbox, customers,
                    gateway: Optional[NotificationGateway] = None) -> 'NotificationDispatcher':
        if gateway is None:
            gateway = SMSGateway.from_config(config) if config.sms_api_token else LogGateway()
        return cls(
            outbox=outbox,
            gateway=gateway,
            customers=customers,
            async_dispatch=config.notification_dispatch_async,
            max_attempts=config.notification_max_attempts,
            enabled=config.notifications_enabled
        )

    def schedule(self, intent_ids: List[str]) -> None:
        """Dispatch freshly committed intents, in the background if configured"""
        if not self.enabled or not intent_ids:
            return
        if not self.async_dispatch:
            self.dispatch(intent_ids)
            return
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="loan-notify")
            self._futures = [f for f in self._futures if not f.done()]
            self._futures.append(self._executor.submit(self._dispatch_in_background, list(intent_ids)))

    def dispatch(self, intent_ids: Iterable[str],
                 from_statuses=(NotificationStatus.PENDING,)) -> Dict[str, int]:
        """Send each intent once; returns counts of sent and failed"""
        results = {'sent': 0, 'failed': 0, 'skipped': 0}
        for intent_id in intent_ids:
            intent = self.outbox.claim(intent_id, from_statuses)
            if intent is None:
                results['skipped'] += 1
                continue
            if self._deliver(intent):
                results['sent'] += 1
            else:
                results['failed'] += 1
        return results

    def _dispatch_in_background(self, intent_ids: List[str]) -> Dict[str, int]:
        try:
            return self.dispatch(intent_ids)
        except Exception:
            # Intents stay PENDING or SENDING; dispatch_pending picks PENDING ones up later
            logger.exception("Background notification dispatch failed")
            return {'sent': 0, 'failed': 0, 'skipped': len(intent_ids)}

    def dispatch_pending(self) -> Dict[str, int]:
        """Send every intent still waiting, e.g. after a restart"""
        pending = self.outbox.with_status(NotificationStatus.PENDING)
        return self.dispatch([intent.id for intent in pending])

    def retry_failed(self) -> Dict[str, int]:
        """Retry failed intents that have attempts left"""
        failed = [intent.id for intent in self.outbox.with_status(NotificationStatus.FAILED)
                  if intent.attempts < self.max_attempts]
        return self.dispatch(failed, from_statuses=(NotificationStatus.FAILED,))

    def notify(self, phone: str, kind: NotificationKind, params: Dict[str, Any]) -> bool:
        """Render one message and send it; True if delivered"""
        return self.gateway.send(phone, render_message(kind, params))

    def _deliver(self, intent: NotificationIntent) -> bool:
        error = None
        try:
            customer = self.customers.get(intent.recipient_id)
            if customer is None or not customer.mobile_phone:
                error = f"No phone number for customer {intent.recipient_id}"
            elif not self.notify(customer.mobile_phone, intent.kind, intent.params):
                error = "Gateway rejected message"
        except Exception as e:
            logger.exception(f"Notification {intent.id} raised during delivery")
            error = str(e) or e.__class__.__name__

        with self.outbox.storage.atomic():
            if error is None:
                intent.status = NotificationStatus.SENT
                intent.sent_at = self.outbox.clock.now()
                intent.last_error = None
            else:
                intent.status = NotificationStatus.FAILED
                intent.last_error = error
            self.outbox.save(intent)

        if error is None:
            log_action(logger, "info", f"Sent {intent.kind.value} notification",
                       action="notification.sent", resource=f"loan:{intent.loan_id}",
                       extra={'intent_id': intent.id, 'attempts': intent.attempts})
        else:
            log_action(logger, "error", f"Failed to send {intent.kind.value} notification: {error}",
                       action="notification.failed", resource=f"loan:{intent.loan_id}",
                       extra={'intent_id': intent.id, 'attempts': intent.attempts})
        return error is None

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for background dispatches submitted so far"""
        with self._lock:
            pending = list(self._futures)
        for future in pending:
            future.result(timeout=timeout)
        with self._lock:
            self._futures = [f for f in self._futures if not f.done()]

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
        self.gateway.close()
