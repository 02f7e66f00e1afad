"""Session-scoped access to the orders table used by the sync engine."""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func as sa_func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import SyncAbandonedError
from app.models.client import Client
from app.models.order import Order

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OrderStore:
    """Wraps one database session. Every write commits on its own.

    The sync engine runs store methods on worker threads through ``call``.
    Once a run is abandoned, pending writes roll back instead of committing,
    and the session is closed by whichever side finishes last.
    """

    def __init__(self, db: Session):
        self.db = db
        self.abandoned = threading.Event()
        self._lock = threading.Lock()
        self._in_flight = 0
        self._close_requested = False
        self.closed = False

    @classmethod
    def factory(cls, session_factory: Callable[[], Session]) -> Callable[[], "OrderStore"]:
        return lambda: cls(session_factory())

    def call(self, method: Callable[..., Any], *args: Any) -> Any:
        """Run a store method on the current (worker) thread."""
        with self._lock:
            if self._close_requested or self.abandoned.is_set():
                raise SyncAbandonedError("Store already released by an abandoned run")
            self._in_flight += 1
        try:
            return method(*args)
        finally:
            with self._lock:
                self._in_flight -= 1
                close_now = self._close_requested and self._in_flight == 0
            if close_now:
                self._close_session()

    def abandon(self) -> None:
        with self._lock:
            self.abandoned.set()

    def close(self) -> None:
        with self._lock:
            self._close_requested = True
            if self._in_flight:
                # The worker thread closes the session when it returns
                logger.warning("Store closed with %d call(s) in flight, deferring", self._in_flight)
                return
        self._close_session()

    def _close_session(self) -> None:
        if not self.closed:
            self.closed = True
            self.db.close()

    def _commit(self) -> None:
        with self._lock:
            if self.abandoned.is_set():
                self.db.rollback()
                raise SyncAbandonedError("Run abandoned, write rolled back")
            self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def find_max_last_synced_at(self) -> Optional[datetime]:
        return as_utc(self.db.query(sa_func.max(Order.last_synced_at)).scalar())

    def find_by_external_id(self, external_id: str) -> Optional[Order]:
        return self.db.query(Order).filter(Order.external_id == external_id).first()

    def find_client_id_by_email(self, email: str) -> Optional[int]:
        row = self.db.query(Client.id).filter(sa_func.lower(Client.email) == email.lower()).first()
        return row[0] if row else None

    def get_or_create_client(self, email: str, name: str, created_by: str = "System") -> int:
        """Find-or-create a client keyed on email; safe to call repeatedly."""
        email = email.lower()
        client_id = self.find_client_id_by_email(email)
        if client_id is not None:
            return client_id

        client = Client(name=name, email=email, created_by=created_by)
        self.db.add(client)
        try:
            self._commit()
        except IntegrityError:
            # Someone else created it between the lookup and the insert
            self.db.rollback()
            client_id = self.find_client_id_by_email(email)
            if client_id is None:
                raise
            return client_id

        logger.info("Created client %s (id=%d)", email, client.id)
        return client.id

    def insert(self, fields: Dict[str, Any]) -> int:
        order = Order(**fields)
        self.db.add(order)
        self._commit()
        return order.id

    def update(self, order_id: int, fields: Dict[str, Any]) -> None:
        order = self.db.get(Order, order_id)
        if order is None:
            raise LookupError(f"Order {order_id} no longer exists")
        synced_at = fields.get("last_synced_at")
        previous = as_utc(order.last_synced_at)
        if synced_at is not None and previous is not None and previous > synced_at:
            # last_synced_at never moves backwards, even under clock skew
            fields = {**fields, "last_synced_at": previous}
        for key, value in fields.items():
            setattr(order, key, value)
        self._commit()
