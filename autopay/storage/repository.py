"""
Persistence for yield strategy records.

Position references and swap configs are stored as JSON text and decoded into
their typed forms at read time. A stored reference that does not decode is a
PositionRefError; it is never replaced with a default.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import Column, DateTime, Index, Integer, Numeric, String, Text

from autopay.domain.models import (
    SwapConfig,
    YieldStrategyRecord,
    position_ref_from_dict,
)
from autopay.exceptions import DataError, PositionRefError
from autopay.monitoring.logger import get_logger
from autopay.storage.db import Base, Database

logger = get_logger(__name__)


class YieldStrategyModel(Base):
    """
    Yield plan for a scheduled task.

    Written when a yield-optimized task is created; read by the executor once at
    settlement time.
    """
    __tablename__ = "yield_strategies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String, nullable=False, unique=True)
    user_address = Column(String, nullable=False)
    amount = Column(String, nullable=False)  # u64 base units, kept as text
    target_address = Column(String, nullable=False)
    target_date = Column(DateTime, nullable=True)
    coin_type = Column(String, nullable=True)
    target_coin_type = Column(String, nullable=True)
    selected_protocol = Column(String, nullable=False)
    current_protocol = Column(String, nullable=True)
    apr_at_selection = Column(Numeric(precision=12, scale=6), nullable=False, default=0)
    position_ref = Column(Text, nullable=True)
    swap_config = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_yield_strategies_user", "user_address"),
    )


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def _from_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    return value.replace(tzinfo=timezone.utc) if value is not None else None


class StrategyRepository:
    """Repository over the yield_strategies table."""

    def __init__(self, db: Database):
        self.db = db

    def save(self, record: YieldStrategyRecord) -> None:
        """Insert or update by task id."""
        now = datetime.now(timezone.utc)
        position_ref = json.dumps(record.position_ref.to_dict()) if record.position_ref else None
        swap_config = json.dumps(record.swap_config.to_dict()) if record.swap_config else None

        with self.db.get_session() as session:
            model = session.query(YieldStrategyModel).filter(
                YieldStrategyModel.task_id == record.task_id
            ).first()

            if model is None:
                model = YieldStrategyModel(
                    task_id=record.task_id,
                    created_at=_to_naive_utc(record.created_at or now),
                )
                session.add(model)

            model.user_address = record.user_address
            model.amount = str(record.amount)
            model.target_address = record.target_address
            model.target_date = _to_naive_utc(record.target_date)
            model.coin_type = record.coin_type
            model.target_coin_type = record.target_coin_type
            model.selected_protocol = record.selected_protocol
            model.current_protocol = record.current_protocol
            model.apr_at_selection = record.apr_at_selection
            model.position_ref = position_ref
            model.swap_config = swap_config
            model.updated_at = _to_naive_utc(now)

        logger.debug("Yield strategy saved", task_id=record.task_id, protocol=record.selected_protocol)

    def get_by_task_id(self, task_id: str) -> Optional[YieldStrategyRecord]:
        with self.db.get_session() as session:
            model = session.query(YieldStrategyModel).filter(
                YieldStrategyModel.task_id == task_id
            ).first()
            return self._to_record(model) if model else None

    def list_by_user(self, user_address: str) -> List[YieldStrategyRecord]:
        """All records for a user, newest first."""
        with self.db.get_session() as session:
            models = (
                session.query(YieldStrategyModel)
                .filter(YieldStrategyModel.user_address == user_address)
                .order_by(YieldStrategyModel.created_at.desc(), YieldStrategyModel.id.desc())
                .all()
            )
            return [self._to_record(m) for m in models]

    def update_current_protocol(self, task_id: str, protocol: Optional[str]) -> bool:
        """Set current_protocol. Returns False when no record exists."""
        with self.db.get_session() as session:
            model = session.query(YieldStrategyModel).filter(
                YieldStrategyModel.task_id == task_id
            ).first()
            if model is None:
                return False
            model.current_protocol = protocol
            model.updated_at = _to_naive_utc(datetime.now(timezone.utc))
            return True

    def delete(self, task_id: str) -> bool:
        with self.db.get_session() as session:
            deleted = session.query(YieldStrategyModel).filter(
                YieldStrategyModel.task_id == task_id
            ).delete()
            return deleted > 0

    @staticmethod
    def _to_record(model: YieldStrategyModel) -> YieldStrategyRecord:
        try:
            amount = int(model.amount)
        except ValueError as e:
            raise DataError(f"Stored amount for task {model.task_id} is not an integer") from e

        position_ref = None
        if model.position_ref:
            try:
                raw_ref = json.loads(model.position_ref)
            except ValueError as e:
                raise PositionRefError(f"Stored positionRef for task {model.task_id} is not JSON") from e
            position_ref = position_ref_from_dict(raw_ref)

        swap_config = None
        if model.swap_config:
            try:
                raw_swap = json.loads(model.swap_config)
            except ValueError as e:
                raise DataError(f"Stored swapConfig for task {model.task_id} is not JSON") from e
            swap_config = SwapConfig.from_dict(raw_swap)

        return YieldStrategyRecord(
            task_id=model.task_id,
            user_address=model.user_address,
            amount=amount,
            target_address=model.target_address,
            selected_protocol=model.selected_protocol,
            target_date=_from_naive_utc(model.target_date),
            coin_type=model.coin_type,
            target_coin_type=model.target_coin_type,
            current_protocol=model.current_protocol,
            apr_at_selection=Decimal(str(model.apr_at_selection)),
            position_ref=position_ref,
            swap_config=swap_config,
            created_at=_from_naive_utc(model.created_at),
            updated_at=_from_naive_utc(model.updated_at),
        )
