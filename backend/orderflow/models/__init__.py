from .order import Order  # noqa: F401
from .order_item import OrderItem  # noqa: F401
from .order_transition import OrderTransition  # noqa: F401
from .driver import Driver  # noqa: F401
from .transaction import Transaction  # noqa: F401
from .driver_wallet import DriverWallet  # noqa: F401
from .admin_wallet import AdminWallet  # noqa: F401
from .setting import Setting  # noqa: F401
from .stock_level import StockLevel  # noqa: F401

from .platform_event import PlatformEvent  # noqa: F401
from .job_run import JobRun  # noqa: F401
from .idempotency_key import IdempotencyKey  # noqa: F401
from .webhook_event import WebhookEvent  # noqa: F401
from .reconciliation_report import ReconciliationReport  # noqa: F401
