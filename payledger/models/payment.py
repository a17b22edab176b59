# payledger/models/payment.py
from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)

from payledger.db.base_class import Base

# Статусы жизненного цикла платежа
STATUS_PENDING = "pending"
STATUS_ATTACHED = "attached"
STATUS_SETTLED = "settled"
STATUS_DENIED = "denied"
STATUS_CANCELLED = "cancelled"

# Период без продления подписки; им же заполняется неизвестный период
BILLING_ONE_OFF = "one-off"

PENDING_STATUSES = (STATUS_PENDING, STATUS_ATTACHED)
TERMINAL_STATUSES = (STATUS_SETTLED, STATUS_DENIED, STATUS_CANCELLED)
ALL_STATUSES = PENDING_STATUSES + TERMINAL_STATUSES

# Порядок для проверки монотонности переходов
STATUS_RANK = {
    STATUS_PENDING: 0,
    STATUS_ATTACHED: 1,
    STATUS_SETTLED: 2,
    STATUS_DENIED: 2,
    STATUS_CANCELLED: 2,
}

_PENDING_SQL = "status IN ('pending', 'attached')"


class PaymentRecord(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    # Владелец может быть неизвестен (анонимная строка из вебхука)
    owner_id = Column(Integer, nullable=True, index=True)

    plan = Column(String(64), nullable=True)
    # NOT NULL: иначе частичный уникальный индекс не срабатывает
    billing_period = Column(
        String(32), nullable=False, default=BILLING_ONE_OFF, server_default=BILLING_ONE_OFF
    )

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False)

    # Идентификаторы шлюза, уникальны когда заданы
    gateway_order_id = Column(String(128), nullable=True)
    gateway_capture_id = Column(String(128), nullable=True)

    status = Column(String(32), nullable=False, default=STATUS_PENDING)

    client_correlation_token = Column(String(128), nullable=True)

    # Типизированные метаданные счёта
    reason = Column(String(40), nullable=True)
    change_to = Column(String(64), nullable=True)

    payer_email = Column(String(256), nullable=True)
    payer_name = Column(String(256), nullable=True)

    # Последний ответ шлюза (только для отладки, наружу не отдаётся)
    gateway_payload = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False)
    created_at_bucket = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    # Когда подписка владельца была продлена по этому платежу
    entitlement_applied_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ux_payments_gateway_order_id", "gateway_order_id", unique=True),
        Index("ux_payments_gateway_capture_id", "gateway_capture_id", unique=True),
        Index("ux_payments_client_correlation_token", "client_correlation_token", unique=True),
        Index(
            "ux_payments_pending_bucket",
            "owner_id",
            "plan",
            "billing_period",
            "created_at_bucket",
            unique=True,
            sqlite_where=text(_PENDING_SQL),
            postgresql_where=text(_PENDING_SQL),
        ),
        Index("ix_payments_owner_status", "owner_id", "status"),
        Index("ix_payments_bucket_amount", "created_at_bucket", "amount"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return (
            f"<PaymentRecord id={self.id} owner={self.owner_id} status={self.status} "
            f"order={self.gateway_order_id} capture={self.gateway_capture_id}>"
        )
