"""
Tests for Notification Module

Tests message templates, phone number formatting, the SMS gateway client,
the outbox and the dispatcher's delivery and retry behaviour.
"""

import json
import threading
import time
import pytest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch
import httpx

from loan_engine.clock import FixedClock
from loan_engine.config import LoanEngineConfig
from loan_engine.customers import CustomerDirectory
from loan_engine.notifications import (
    NotificationKind,
    NotificationStatus,
    NotificationOutbox,
    NotificationDispatcher,
    NotificationGateway,
    LogGateway,
    SMSGateway,
    render_message,
    format_phone_number,
)
from loan_engine.storage import InMemoryStorage


API_URL = "https://sms.example.test/api/send"


class FlakyGateway(NotificationGateway):
    """Refuses the first ``failures`` messages, then accepts"""

    def __init__(self, failures=1, raise_error=False):
        self.failures = failures
        self.raise_error = raise_error
        self.sent = []

    def send(self, phone, message):
        if self.failures > 0:
            self.failures -= 1
            if self.raise_error:
                raise ConnectionError("gateway down")
            return False
        self.sent.append((phone, message))
        return True


class TestTemplates:

    def test_payment_received(self):
        message = render_message(NotificationKind.PAYMENT_RECEIVED, {
            'display_id': "L0007",
            'amount': "LKR 2,000.00",
            'outstanding': "LKR 3,500.00",
        })
        assert message == "LoanId: L0007\nToday Paid: LKR 2,000.00\nBalance: LKR 3,500.00\nThank you!"

    def test_renewed(self):
        message = render_message(NotificationKind.LOAN_RENEWED, {
            'display_id': "L0007",
            'outstanding_amount': "LKR 1,200.00",
            'new_display_id': "L0012",
        })
        assert "Loan L0007 renewed" in message
        assert "New loan: L0012" in message

    @pytest.mark.parametrize("phone,expected", [
        ("0771234567", "94771234567"),
        ("077 123 4567", "94771234567"),
        ("+94 77 123 4567", "94771234567"),
        ("771234567", "94771234567"),
        ("", None),
        ("n/a", None),
        (None, None),
    ])
    def test_format_phone_number(self, phone, expected):
        assert format_phone_number(phone) == expected

    def test_format_phone_number_other_country(self):
        assert format_phone_number("0712345678", country_code="254") == "254712345678"


class TestSMSGateway:
    """Test the HTTP SMS client"""

    def _gateway(self, handler, token="secret-token"):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return SMSGateway(API_URL, token, sender_id="LoanCo", client=client)

    def test_successful_send(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"status": "success", "message": "queued"})

        gateway = self._gateway(handler)

        assert gateway.send("0771234567", "Hello") is True
        payload = json.loads(requests[0].content)
        assert str(requests[0].url) == API_URL
        assert payload == {
            "api_token": "secret-token",
            "recipient": "94771234567",
            "sender_id": "LoanCo",
            "type": "plain",
            "message": "Hello",
        }

    def test_provider_error_status(self):
        gateway = self._gateway(
            lambda request: httpx.Response(200, json={"status": "error", "message": "no credit"})
        )
        assert gateway.send("0771234567", "Hello") is False

    def test_non_json_response(self):
        gateway = self._gateway(lambda request: httpx.Response(502, text="Bad Gateway"))
        assert gateway.send("0771234567", "Hello") is False

    @patch('httpx.Client.post')
    def test_network_error(self, mock_post):
        mock_post.side_effect = httpx.ConnectError("Connection failed")
        gateway = SMSGateway(API_URL, "secret-token")

        assert gateway.send("0771234567", "Hello") is False
        mock_post.assert_called_once()
        gateway.close()

    @patch('httpx.Client.post')
    def test_missing_token_skips_request(self, mock_post):
        gateway = SMSGateway(API_URL, "")
        assert gateway.send("0771234567", "Hello") is False
        mock_post.assert_not_called()
        gateway.close()

    @patch('httpx.Client.post')
    def test_invalid_phone_skips_request(self, mock_post):
        gateway = SMSGateway(API_URL, "secret-token")
        assert gateway.send("unknown", "Hello") is False
        mock_post.assert_not_called()
        gateway.close()

    def test_from_config(self):
        config = LoanEngineConfig(_env_file=None, sms_api_token="abc", sms_sender_id="Shop")
        gateway = SMSGateway.from_config(config)
        assert gateway.api_token == "abc"
        assert gateway.sender_id == "Shop"
        gateway.close()


class TestDispatcher:
    """Test outbox delivery"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.clock = FixedClock()
        self.customers = CustomerDirectory(self.storage, self.clock)
        self.outbox = NotificationOutbox(self.storage, self.clock)
        self.customer = self.customers.register("Dilini Herath", "0770001112")

    def _dispatcher(self, gateway, **kwargs):
        kwargs.setdefault("async_dispatch", False)
        return NotificationDispatcher(self.outbox, gateway, self.customers, **kwargs)

    def _enqueue(self, recipient_id=None):
        return self.outbox.enqueue(
            NotificationKind.LOAN_COMPLETED, recipient_id or self.customer.id, "loan-1",
            {'display_id': "L0001"}
        )

    def test_successful_delivery(self):
        gateway = LogGateway()
        intent = self._enqueue()

        results = self._dispatcher(gateway).dispatch([intent.id])

        assert results == {'sent': 1, 'failed': 0, 'skipped': 0}
        stored = self.outbox.get(intent.id)
        assert stored.status == NotificationStatus.SENT
        assert stored.attempts == 1
        assert stored.sent_at == self.clock.now()
        assert gateway.sent == [("0770001112", "Loan L0001 completed\nBalance: 0\nThank you!")]

    def test_notify_renders_and_sends(self):
        gateway = LogGateway()
        delivered = self._dispatcher(gateway).notify(
            "0770001112", NotificationKind.LOAN_SETTLED, {'display_id': "L0003"}
        )
        assert delivered is True
        assert gateway.sent == [("0770001112", "Loan L0003 settled\nBalance: 0\nThank you!")]

    def test_already_sent_intent_is_skipped(self):
        dispatcher = self._dispatcher(LogGateway())
        intent = self._enqueue()
        dispatcher.dispatch([intent.id])

        assert dispatcher.dispatch([intent.id]) == {'sent': 0, 'failed': 0, 'skipped': 1}

    def test_rejected_message_is_recorded(self):
        intent = self._enqueue()

        results = self._dispatcher(FlakyGateway(failures=1)).dispatch([intent.id])

        assert results['failed'] == 1
        stored = self.outbox.get(intent.id)
        assert stored.status == NotificationStatus.FAILED
        assert stored.last_error == "Gateway rejected message"

    def test_gateway_exception_does_not_propagate(self):
        intent = self._enqueue()

        results = self._dispatcher(FlakyGateway(failures=1, raise_error=True)).dispatch([intent.id])

        assert results['failed'] == 1
        assert self.outbox.get(intent.id).last_error == "gateway down"

    def test_unknown_recipient(self):
        intent = self._enqueue(recipient_id="ghost")
        self._dispatcher(LogGateway()).dispatch([intent.id])
        assert self.outbox.get(intent.id).status == NotificationStatus.FAILED

    def test_retry_failed_until_max_attempts(self):
        gateway = FlakyGateway(failures=5)
        dispatcher = self._dispatcher(gateway, max_attempts=3)
        intent = self._enqueue()

        dispatcher.dispatch([intent.id])
        dispatcher.retry_failed()
        dispatcher.retry_failed()
        # Third attempt used up, nothing left to retry
        assert dispatcher.retry_failed() == {'sent': 0, 'failed': 0, 'skipped': 0}

        stored = self.outbox.get(intent.id)
        assert stored.status == NotificationStatus.FAILED
        assert stored.attempts == 3

    def test_retry_failed_succeeds(self):
        dispatcher = self._dispatcher(FlakyGateway(failures=1))
        intent = self._enqueue()
        dispatcher.dispatch([intent.id])

        assert dispatcher.retry_failed()['sent'] == 1
        assert self.outbox.get(intent.id).status == NotificationStatus.SENT

    def test_dispatch_pending(self):
        gateway = LogGateway()
        intents = [self._enqueue() for _ in range(3)]

        results = self._dispatcher(gateway).dispatch_pending()

        assert results['sent'] == 3
        assert self.outbox.with_status(NotificationStatus.PENDING) == []
        assert len(self.outbox.for_loan("loan-1")) == len(intents)

    def test_background_dispatch(self):
        gateway = LogGateway()
        dispatcher = self._dispatcher(gateway, async_dispatch=True)
        intent = self._enqueue()

        dispatcher.schedule([intent.id])
        dispatcher.flush(timeout=5)

        assert self.outbox.get(intent.id).status == NotificationStatus.SENT
        dispatcher.shutdown()

    def test_concurrent_schedule_shares_one_executor(self):
        gateway = LogGateway()
        dispatcher = self._dispatcher(gateway, async_dispatch=True)
        intents = [self._enqueue() for _ in range(4)]
        barrier = threading.Barrier(len(intents))
        created = []

        def slow_executor(*args, **kwargs):
            time.sleep(0.05)
            executor = ThreadPoolExecutor(*args, **kwargs)
            created.append(executor)
            return executor

        def schedule(intent_id):
            barrier.wait()
            dispatcher.schedule([intent_id])

        with patch('loan_engine.notifications.ThreadPoolExecutor', side_effect=slow_executor):
            threads = [threading.Thread(target=schedule, args=(intent.id,)) for intent in intents]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        dispatcher.flush(timeout=5)

        assert len(created) == 1
        for intent in intents:
            assert self.outbox.get(intent.id).status == NotificationStatus.SENT
        assert len(gateway.sent) == len(intents)
        dispatcher.shutdown()

    def test_disabled_dispatcher_sends_nothing(self):
        gateway = LogGateway()
        intent = self._enqueue()

        self._dispatcher(gateway, enabled=False).schedule([intent.id])

        assert gateway.sent == []
        assert self.outbox.get(intent.id).status == NotificationStatus.PENDING

    def test_from_config_without_token_logs_only(self):
        config = LoanEngineConfig(_env_file=None, sms_api_token="")
        dispatcher = NotificationDispatcher.from_config(config, self.outbox, self.customers)
        assert isinstance(dispatcher.gateway, LogGateway)
        assert dispatcher.max_attempts == config.notification_max_attempts
