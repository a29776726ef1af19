import logging
import re
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, DateTime, Numeric, String, create_engine, func, select, update
from sqlalchemy.orm import declarative_base, sessionmaker

from config import get_settings

logger = logging.getLogger(__name__)

# Order lifecycle
PENDING = "Pending"
PAID = "Paid"
DELIVERING = "Delivering"
DONE = "Done"
CANCELLED = "Cancelled"
ORDER_STATUSES = (PENDING, PAID, DELIVERING, DONE, CANCELLED)

_HEX_PATTERN = re.compile(r"[0-9a-fA-F]+")

Base = declarative_base()


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    total_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default=PENDING)
    payment_method = Column(String(20), nullable=True)  # Bakong, ABA
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String(36), index=True, nullable=False)
    payment_method = Column(String(20), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="Success")
    reference_code = Column(String(64), nullable=True)
    transaction_date = Column(DateTime, default=datetime.utcnow)


def make_engine(url):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


def make_session_factory(engine):
    return sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)


engine = make_engine(get_settings().database_url)
SessionLocal = make_session_factory(engine)


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)


class OrderStore:
    """Order lookups plus the single status write the payment flow owns."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def create(self, total_amount, status=PENDING, order_id=None):
        with self.session_factory() as db:
            order = Order(
                id=order_id or str(uuid.uuid4()),
                total_amount=Decimal(str(total_amount)),
                status=status,
            )
            db.add(order)
            db.commit()
            return order

    def get(self, order_id):
        with self.session_factory() as db:
            return db.get(Order, str(order_id))

    def find_by_reference(self, reference):
        """Exact id first, then the truncated dash-less id echoed by gateways."""
        if not reference:
            return None
        with self.session_factory() as db:
            order = db.get(Order, reference)
            if order is not None:
                return order

            prefix = reference.replace("-", "")
            if not _HEX_PATTERN.fullmatch(prefix):
                return None
            matches = db.execute(
                select(Order)
                .where(func.replace(Order.id, "-", "").like(prefix.lower() + "%"))
                .limit(2)
            ).scalars().all()

        if len(matches) > 1:
            logger.warning("Reference %s matches more than one order", reference)
            return None
        return matches[0] if matches else None

    def set_paid(self, order_id, paid_at, payment_method, reference=None):
        """Compare-and-set on status != Paid. Returns True only for the caller that won."""
        with self.session_factory() as db, db.begin():
            result = db.execute(
                update(Order)
                .where(Order.id == str(order_id), Order.status != PAID)
                .values(status=PAID, paid_at=paid_at, updated_at=paid_at, payment_method=payment_method)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            amount = db.execute(
                select(Order.total_amount).where(Order.id == str(order_id))
            ).scalar_one()
            db.add(Transaction(
                order_id=str(order_id),
                payment_method=payment_method,
                amount=amount,
                reference_code=reference,
                transaction_date=paid_at,
            ))
        return True

    def transactions_for(self, order_id):
        with self.session_factory() as db:
            return db.execute(
                select(Transaction).where(Transaction.order_id == str(order_id))
            ).scalars().all()
