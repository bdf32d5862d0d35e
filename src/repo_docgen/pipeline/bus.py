"""Durable at-least-once message bus stored in SQLite."""

from __future__ import annotations

import json
import logging
import random
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, and_, col, or_, select

from repo_docgen.pipeline.errors import TransientDeliveryError
from repo_docgen.pipeline.models import BusMessageStatus, BusMessageView
from repo_docgen.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from repo_docgen.storage.sqlmodel_models import BusMessage, BusTopic

logger = logging.getLogger(__name__)


class MessagePublisher(Protocol):
    """Producer side of the bus used by the relay publisher."""

    def ensure_topic(self, topic: str) -> None: ...

    def publish(self, topic: str, data: dict[str, Any]) -> str: ...


class MessageConsumer(Protocol):
    """Consumer side of the bus used by the worker loop."""

    def pull(self, topic: str, *, worker_id: str) -> BusMessageView | None: ...

    def ack(self, message_id: str) -> bool: ...

    def nack(self, message_id: str, *, error: str) -> BusMessageStatus | None: ...

    def defer(self, message_id: str, *, until: datetime, reason: str) -> bool: ...

    def dead_letter(self, message_id: str, *, error: str) -> bool: ...


class SqliteMessageBus:
    """Topic/message store with leased delivery, backoff and dead-lettering.

    A pulled message is leased to one consumer. ``ack`` finishes it, ``nack``
    makes it available again after an exponential backoff with jitter, and a
    lease that expires without either is redelivered on the next pull. After
    ``max_delivery_attempts`` deliveries the message is moved to ``dead``.
    ``defer`` hands a message back for later without counting the delivery.
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        lease_seconds: int = 900,
        max_delivery_attempts: int = 5,
        retry_base_seconds: int = 10,
        retry_max_seconds: int = 600,
    ) -> None:
        self.db_path = db_path
        self.lease_seconds = lease_seconds
        self.max_delivery_attempts = max_delivery_attempts
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._random = random.Random()  # noqa: S311

    def close(self) -> None:
        self.engine.dispose()

    def ensure_topic(self, topic: str) -> None:
        """Create the topic if absent; concurrent creators are tolerated."""

        try:
            with Session(self.engine) as session:
                if session.get(BusTopic, topic) is not None:
                    return
                session.add(BusTopic(name=topic, created_at=to_db_datetime(utc_now())))
                session.commit()
                logger.info("Created bus topic %s", topic)
        except IntegrityError:
            # Another process created it between the check and the insert.
            return
        except OperationalError as error:
            raise TransientDeliveryError(
                f"Bus unavailable while creating topic {topic}: {error}",
            ) from error

    def publish(self, topic: str, data: dict[str, Any]) -> str:
        """Store one message on a topic and return its message id."""

        now = utc_now()
        message_id = str(uuid4())
        body = json.dumps(data, ensure_ascii=False, sort_keys=True)
        try:
            with Session(self.engine) as session:
                if session.get(BusTopic, topic) is None:
                    raise TransientDeliveryError(f"Topic not found: {topic}")
                session.add(
                    BusMessage(
                        message_id=message_id,
                        topic=topic,
                        data_json=body,
                        status=BusMessageStatus.PENDING.value,
                        delivery_attempts=0,
                        available_at=to_db_datetime(now),
                        published_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                session.commit()
        except OperationalError as error:
            raise TransientDeliveryError(
                f"Bus unavailable while publishing to {topic}: {error}",
            ) from error
        return message_id

    def pull(self, topic: str, *, worker_id: str) -> BusMessageView | None:
        """Lease the next deliverable message on a topic."""

        while True:
            now = utc_now()
            db_now = to_db_datetime(now)
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(BusMessage)
                    .where(
                        col(BusMessage.topic) == topic,
                        or_(
                            and_(
                                col(BusMessage.status) == BusMessageStatus.PENDING.value,
                                col(BusMessage.available_at) <= db_now,
                            ),
                            and_(
                                col(BusMessage.status) == BusMessageStatus.LEASED.value,
                                col(BusMessage.leased_until) <= db_now,
                            ),
                        ),
                    )
                    .order_by(
                        col(BusMessage.available_at).asc(),
                        col(BusMessage.published_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                expired_lease = candidate.status == BusMessageStatus.LEASED.value
                previous_owner = candidate.lease_owner
                if expired_lease and candidate.delivery_attempts >= self.max_delivery_attempts:
                    result = session.exec(
                        sa_update(BusMessage)
                        .where(
                            col(BusMessage.message_id) == candidate.message_id,
                            col(BusMessage.status) == BusMessageStatus.LEASED.value,
                            col(BusMessage.delivery_attempts) == candidate.delivery_attempts,
                        )
                        .values(
                            status=BusMessageStatus.DEAD.value,
                            leased_until=None,
                            lease_owner=None,
                            last_error="lease expired on final delivery attempt",
                            updated_at=db_now,
                        ),
                    )
                    if result.rowcount == 1:
                        logger.warning(
                            "Bus message %s dead-lettered after %d deliveries (lease expired)",
                            candidate.message_id,
                            candidate.delivery_attempts,
                        )
                        session.commit()
                    else:
                        session.rollback()
                    continue

                result = session.exec(
                    sa_update(BusMessage)
                    .where(
                        col(BusMessage.message_id) == candidate.message_id,
                        col(BusMessage.status) == candidate.status,
                        col(BusMessage.delivery_attempts) == candidate.delivery_attempts,
                    )
                    .values(
                        status=BusMessageStatus.LEASED.value,
                        delivery_attempts=candidate.delivery_attempts + 1,
                        leased_until=to_db_datetime(now + timedelta(seconds=self.lease_seconds)),
                        lease_owner=worker_id,
                        updated_at=db_now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                if expired_lease:
                    logger.info(
                        "Redelivering bus message %s after expired lease of %s",
                        candidate.message_id,
                        previous_owner,
                    )
                session.commit()
                leased = session.exec(
                    select(BusMessage).where(BusMessage.message_id == candidate.message_id),
                ).one()
                return _to_message_view(leased)

    def ack(self, message_id: str) -> bool:
        """Mark a leased message as processed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BusMessage)
                .where(
                    col(BusMessage.message_id) == message_id,
                    col(BusMessage.status) == BusMessageStatus.LEASED.value,
                )
                .values(
                    status=BusMessageStatus.ACKED.value,
                    leased_until=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def nack(self, message_id: str, *, error: str) -> BusMessageStatus | None:
        """Return a leased message for redelivery, or dead-letter it when attempts run out."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(BusMessage, message_id)
            if row is None or row.status != BusMessageStatus.LEASED.value:
                return None

            attempts = row.delivery_attempts
            if attempts >= self.max_delivery_attempts:
                next_status = BusMessageStatus.DEAD
                available_at = row.available_at
            else:
                next_status = BusMessageStatus.PENDING
                delay = self._compute_retry_delay(attempt=attempts)
                available_at = to_db_datetime(now + timedelta(seconds=delay))

            result = session.exec(
                sa_update(BusMessage)
                .where(
                    col(BusMessage.message_id) == message_id,
                    col(BusMessage.status) == BusMessageStatus.LEASED.value,
                    col(BusMessage.delivery_attempts) == attempts,
                )
                .values(
                    status=next_status.value,
                    available_at=available_at,
                    leased_until=None,
                    lease_owner=None,
                    last_error=error,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
        if next_status is BusMessageStatus.DEAD:
            logger.warning(
                "Bus message %s dead-lettered after %d deliveries: %s",
                message_id,
                attempts,
                error,
            )
        return next_status

    def defer(self, message_id: str, *, until: datetime, reason: str) -> bool:
        """Release a leased message until ``until`` without spending a delivery attempt."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(BusMessage, message_id)
            if row is None or row.status != BusMessageStatus.LEASED.value:
                return False

            attempts = row.delivery_attempts
            result = session.exec(
                sa_update(BusMessage)
                .where(
                    col(BusMessage.message_id) == message_id,
                    col(BusMessage.status) == BusMessageStatus.LEASED.value,
                    col(BusMessage.delivery_attempts) == attempts,
                )
                .values(
                    status=BusMessageStatus.PENDING.value,
                    delivery_attempts=max(attempts - 1, 0),
                    available_at=to_db_datetime(max(until, now)),
                    leased_until=None,
                    lease_owner=None,
                    last_error=reason,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.info("Bus message %s deferred until %s: %s", message_id, until.isoformat(), reason)
        return True

    def dead_letter(self, message_id: str, *, error: str) -> bool:
        """Stop delivering a message that can never be processed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BusMessage)
                .where(
                    col(BusMessage.message_id) == message_id,
                    col(BusMessage.status).in_(
                        [BusMessageStatus.PENDING.value, BusMessageStatus.LEASED.value],
                    ),
                )
                .values(
                    status=BusMessageStatus.DEAD.value,
                    leased_until=None,
                    lease_owner=None,
                    last_error=error,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.warning("Bus message %s dead-lettered: %s", message_id, error)
        return True

    def get_message(self, message_id: str) -> BusMessageView | None:
        with Session(self.engine) as session:
            row = session.get(BusMessage, message_id)
            return _to_message_view(row) if row is not None else None

    def list_messages(
        self,
        topic: str,
        *,
        status: BusMessageStatus | None = None,
        limit: int = 50,
    ) -> list[BusMessageView]:
        """List messages on a topic, newest first."""

        with Session(self.engine) as session:
            statement = (
                select(BusMessage)
                .where(BusMessage.topic == topic)
                .order_by(col(BusMessage.published_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(BusMessage.status == status.value)
            rows = session.exec(statement).all()
        return [_to_message_view(row) for row in rows]

    def _compute_retry_delay(self, *, attempt: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(attempt - 1, 0)),
        )
        return self._random.uniform(max_delay / 2, max_delay)


def _to_message_view(row: BusMessage) -> BusMessageView:
    parsed = json.loads(row.data_json)
    return BusMessageView(
        message_id=row.message_id,
        topic=row.topic,
        data=parsed if isinstance(parsed, dict) else {},
        status=BusMessageStatus(row.status),
        delivery_attempts=row.delivery_attempts,
        published_at=to_utc_aware_datetime(row.published_at),
        leased_until=optional_utc(row.leased_until),
        last_error=row.last_error,
    )
