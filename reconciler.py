"""
Payment status reconciliation.

An order moves from awaiting payment to Paid exactly once. Two paths can
observe the payment: a caller polling the gateway, and the gateway pushing a
callback. Both end in ``reconcile``, which relies on the store's
compare-and-set so a late duplicate never rewrites ``paid_at`` or records the
revenue twice.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

import database
from exceptions import GatewayError, GatewayUnreachable, UnknownReference

logger = logging.getLogger(__name__)


class PaymentState(str, Enum):
    AWAITING_PAYMENT = "AwaitingPayment"
    PAID = "Paid"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class PaymentEvent:
    order_id: str
    paid_at: datetime
    amount: Decimal
    payment_method: str
    reference: Optional[str]


class PaymentReconciler:
    def __init__(self, store, gateway, clock=datetime.utcnow, sleep=time.sleep):
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.sleep = sleep
        self._listeners = []
        self._polling = set()
        self._polling_lock = threading.Lock()

    def subscribe(self, listener):
        """Registers ``listener(event)`` for every Paid transition."""
        self._listeners.append(listener)
        return listener

    def check_status(self, reference):
        try:
            paid = self.gateway.is_paid(reference)
        except GatewayUnreachable as e:
            logger.warning("[%s Check] gateway unreachable for %s: %s", self.gateway.name, reference, e)
            return PaymentState.UNKNOWN
        except GatewayError as e:
            logger.error("[%s Check] gateway error for %s: %s", self.gateway.name, reference, e)
            return PaymentState.UNKNOWN
        return PaymentState.PAID if paid else PaymentState.AWAITING_PAYMENT

    def reconcile(self, order_id, observed_state, reference=None):
        """Applies the Paid transition. Returns True only when this call made it."""
        if observed_state != PaymentState.PAID:
            return False

        order = self.store.get(order_id)
        if order is None:
            raise UnknownReference(order_id)
        if order.status == database.PAID:
            logger.info("Order %s already paid, ignoring duplicate notification", order_id)
            return False

        paid_at = self.clock()
        if not self.store.set_paid(order.id, paid_at, self.gateway.name, reference):
            logger.info("Order %s was marked paid concurrently", order_id)
            return False

        logger.info("Order %s paid via %s (ref %s)", order.id, self.gateway.name, reference)
        self._publish(PaymentEvent(
            order_id=order.id,
            paid_at=paid_at,
            amount=order.total_amount,
            payment_method=self.gateway.name,
            reference=reference,
        ))
        return True

    def poll(self, order_id, reference, timeout=180.0, interval=5.0, expires_at=None):
        """Blocks until the gateway reports Paid, the timeout runs out, or the QR expires.

        Unreachable gateways just count as another pending round. Only one loop
        runs per order; a second call returns Unknown straight away.
        """
        with self._polling_lock:
            if order_id in self._polling:
                logger.info("Order %s is already being polled", order_id)
                return PaymentState.UNKNOWN
            self._polling.add(order_id)
        try:
            return self._poll(order_id, reference, timeout, interval, expires_at)
        finally:
            with self._polling_lock:
                self._polling.discard(order_id)

    def is_polling(self, order_id):
        with self._polling_lock:
            return order_id in self._polling

    def _poll(self, order_id, reference, timeout, interval, expires_at):
        attempts = max(1, int(timeout // interval) + 1) if interval > 0 else 1
        state = PaymentState.UNKNOWN
        for attempt in range(attempts):
            state = self.check_status(reference)
            if state == PaymentState.PAID:
                self.reconcile(order_id, state, reference)
                return state
            if expires_at is not None and self.clock() >= expires_at:
                logger.info("Stopped polling order %s, QR expired at %s", order_id, expires_at)
                return state
            if attempt < attempts - 1:
                self.sleep(interval)
        return state

    def handle_callback(self, notification):
        order = self.store.find_by_reference(notification.tran_id)
        if order is None:
            logger.warning("Callback for unknown reference %s discarded", notification.tran_id)
            raise UnknownReference(notification.tran_id)
        if not notification.is_success:
            logger.info("Callback for order %s reports status %s", order.id, notification.status)
            return False
        if notification.amount is not None and notification.amount != order.total_amount:
            logger.warning(
                "Callback for order %s reports amount %s, expected %s",
                order.id, notification.amount, order.total_amount,
            )
            return False
        return self.reconcile(order.id, PaymentState.PAID, notification.tran_id)

    def _publish(self, event):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Payment listener %r failed for order %s", listener, event.order_id)
