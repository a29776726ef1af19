import logging
from functools import lru_cache

import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import database
import khqr_utils
from config import get_settings
from exceptions import AssemblyError, GatewayError, InvalidSignature, UnknownReference
from gateways import CURRENCIES, BakongClient, PaymentCallback, PayWayClient
from reconciler import PaymentReconciler, PaymentState
from telegram_notifier import TelegramNotifier

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="GenZStore Payments")


class PaymentRequestDto(BaseModel):
    order_id: str


class PaymentServices:
    def __init__(self, settings, store, bakong, payway, notifier=None):
        self.settings = settings
        self.store = store
        self.bakong = bakong
        self.payway = payway
        self.bakong_reconciler = PaymentReconciler(store, bakong)
        self.payway_reconciler = PaymentReconciler(store, payway)
        if notifier is not None:
            self.bakong_reconciler.subscribe(notifier)
            self.payway_reconciler.subscribe(notifier)


# Dependency
@lru_cache()
def get_services():
    return PaymentServices(
        settings,
        database.OrderStore(),
        BakongClient.from_settings(settings),
        PayWayClient.from_settings(settings),
        TelegramNotifier.from_settings(settings),
    )


def _error(status_code, message):
    return JSONResponse(status_code=status_code, content={"error": message})


def _load_unpaid_order(services, order_id):
    order = services.store.get(order_id)
    if order is None:
        return None, _error(404, "Order not found")
    if order.status == database.PAID:
        return None, _error(409, "Order is already paid")
    return order, None


# --- KHQR Payment ---

@app.post("/api/payment/generate-bakong")
def generate_bakong_qr(
    body: PaymentRequestDto,
    background_tasks: BackgroundTasks,
    watch: bool = False,
    services: PaymentServices = Depends(get_services),
):
    order, error = _load_unpaid_order(services, body.order_id)
    if error:
        return error

    request = khqr_utils.build_payment_request(order.id, order.total_amount, services.settings)
    try:
        payload = khqr_utils.assemble(request)
    except AssemblyError as e:
        logger.warning("KHQR assembly failed for order %s: %s", order.id, e)
        return _error(400, str(e))

    if watch and services.bakong_reconciler.is_polling(order.id):
        logger.info("Order %s is already being watched", order.id)
    elif watch:
        background_tasks.add_task(
            services.bakong_reconciler.poll,
            order.id,
            payload.reference_hash,
            timeout=services.settings.poll_timeout,
            interval=services.settings.poll_interval,
            expires_at=request.expires_at,
        )

    return {
        "order_id": order.id,
        "khqr_string": payload.raw_string,
        "md5": payload.reference_hash,
        "amount": khqr_utils.format_amount(order.total_amount),
        "currency": CURRENCIES.get(request.currency_code, request.currency_code),
        "expires_at": request.expires_at.isoformat() + "Z",  # Force UTC interpretation
    }


@app.get("/api/payment/check-status/{order_id}/{md5}")
def check_bakong_status(order_id: str, md5: str, services: PaymentServices = Depends(get_services)):
    order = services.store.get(order_id)
    if order is None:
        return _error(404, "Order not found")
    if order.status == database.PAID:
        return {"status": "PAID"}

    # The payload is deterministic, so the order's md5 can be rebuilt here
    request = khqr_utils.build_payment_request(order.id, order.total_amount, services.settings)
    try:
        expected = khqr_utils.assemble(request).reference_hash
    except AssemblyError as e:
        return _error(400, str(e))
    if md5.lower() != expected:
        logger.warning("md5 %s does not belong to order %s", md5, order.id)
        return _error(400, "md5 does not match this order")

    return _check_status(services.bakong_reconciler, order.id, expected)


@app.post("/api/payment/generate-payway")
def generate_payway_qr(body: PaymentRequestDto, services: PaymentServices = Depends(get_services)):
    order, error = _load_unpaid_order(services, body.order_id)
    if error:
        return error

    try:
        checkout = services.payway.create_transaction(
            order.id, order.total_amount, services.settings.khqr_currency_code
        )
    except AssemblyError as e:
        return _error(400, str(e))
    except GatewayError as e:
        logger.error("PayWay purchase failed for order %s: %s", order.id, e)
        return _error(502, f"PayWay error: {e.message}")

    return {
        "order_id": order.id,
        "tran_id": checkout.tran_id,
        "khqr_string": checkout.qr_string,
        "app_deeplink": checkout.deeplink,
        "checkout_url": checkout.checkout_url,
        "amount": khqr_utils.format_amount(order.total_amount),
        "currency": CURRENCIES.get(services.settings.khqr_currency_code, "USD"),
    }


@app.get("/api/payment/payway/check-status/{order_id}")
def check_payway_status(order_id: str, services: PaymentServices = Depends(get_services)):
    return _check_status(services.payway_reconciler, order_id, PayWayClient.transaction_id(order_id))


@app.post("/api/payment/payway/callback")
def payway_callback(notification: PaymentCallback, services: PaymentServices = Depends(get_services)):
    try:
        services.payway.verify_callback(notification)
    except InvalidSignature as e:
        logger.warning("Rejected PayWay callback: %s", e)
        return _error(403, "Invalid signature")

    try:
        updated = services.payway_reconciler.handle_callback(notification)
    except UnknownReference:
        return {"status": "ignored"}
    return {"status": "ok", "updated": updated}


def _check_status(reconciler, order_id, reference):
    order = reconciler.store.get(order_id)
    if order is None:
        return _error(404, "Order not found")
    if order.status == database.PAID:
        return {"status": "PAID"}

    # Unreachable gateway reads as still pending for the caller
    state = reconciler.check_status(reference)
    if state == PaymentState.PAID:
        reconciler.reconcile(order.id, state, reference)
        return {"status": "PAID"}
    return {"status": "PENDING"}


@app.on_event("startup")
def startup_event():
    logger.info("Initializing database...")
    database.init_db()


if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
