'''Validator tracking models'''

import datetime

from database_config import Base
from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from validator_status import ValidatorStatus


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class Validator(Base):
    '''
    Current record per validator public key, imported from provider CSVs
    and kept up to date by the status sync.
    '''
    __tablename__ = "validators"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pubkey = Column(String(98), unique=True, nullable=False, index=True)
    provider = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default=ValidatorStatus.PENDING.value)
    json_filename = Column(String(255), nullable=True)
    bucket_no = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_provider_status", "provider", "status"),
    )


class ExitBatch(Base):
    '''
    A named upload of validators whose exits are tracked together.
    '''
    __tablename__ = "exit_batches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    filename = Column(String(255), nullable=False)
    uploaded_at = Column(DateTime, nullable=False, default=utcnow)
    total_validators = Column(Integer, nullable=False, default=0)


class ExitValidator(Base):
    '''
    Per-batch snapshot of a validator. Joined to Validator by pubkey only.
    '''
    __tablename__ = "exit_validators"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(Integer, ForeignKey("exit_batches.id"), nullable=False, index=True)
    pubkey = Column(String(98), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=ValidatorStatus.PENDING.value, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("batch_id", "pubkey", name="uq_exit_batch_pubkey"),
    )
