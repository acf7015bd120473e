"""
SQLAlchemy ORM models for the tables of one conversation partition.

Every partition is its own SQLite database holding exactly these tables.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    ForeignKey,
    Integer,
    PrimaryKeyConstraint,
    String,
    text,
)

from chatrelay.storage import Base


class PartitionMeta(Base):
    """
    Participant pair and creation time of the partition.

    Written once when the partition is created, read-only afterwards.
    """
    __tablename__ = "partition_meta"

    remote_id = Column(String, primary_key=True)
    local_id = Column(String, primary_key=True)
    created_at = Column(Integer, nullable=False)


class ClientMessage(Base):
    """
    One row per distinct inbound message ever seen in the conversation.

    Table: client_messages
    Primary Key: id (channel-assigned, gives us dedupe of redeliveries)

    created_at, type and payload are write-once. replied only goes
    false -> true and knock_count never decreases.
    """
    __tablename__ = "client_messages"

    id = Column(String, primary_key=True)
    created_at = Column(Integer, nullable=False, index=True)  # channel unix seconds
    type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    replied = Column(Boolean, nullable=False, default=False, server_default=text("0"))
    knock_count = Column(Integer, nullable=False, default=0, server_default=text("0"))


class BackendReply(Base):
    """
    Reply produced by the inference side for one ClientMessage.

    Table: backend_replies
    Primary Key: (related_id, sequence); sequence is assigned by the store,
    starts at 0 and has no gaps per related_id.
    """
    __tablename__ = "backend_replies"
    __table_args__ = (PrimaryKeyConstraint("related_id", "sequence"),)

    related_id = Column(
        String,
        ForeignKey("client_messages.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence = Column(Integer, nullable=False)
    type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
