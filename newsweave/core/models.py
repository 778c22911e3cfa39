"""Database models for Newsweave."""

from sqlalchemy import (
    String, DateTime, Boolean, Text, Integer, BigInteger,
    ForeignKey, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import mapped_column

from .db import Base
from .time import utcnow

# BIGINT primary keys do not autoincrement on SQLite
PK = BigInteger().with_variant(Integer, "sqlite")

SOURCE_TYPES = ("rss", "twitter", "youtube", "hackernews", "web", "default")


class FeedSource(Base):
    """Feeds polled by the ingestor, synced from config/feeds.yaml."""
    __tablename__ = "feed_sources"

    id = mapped_column(PK, primary_key=True, autoincrement=True)
    name = mapped_column(String(200), nullable=False)
    url = mapped_column(String(1000), unique=True, nullable=False)
    label = mapped_column(String(100), nullable=True)  # provenance label for items
    source_type = mapped_column(String(32), default="rss", nullable=False)
    etag = mapped_column(String(200), nullable=True)
    last_modified = mapped_column(DateTime(timezone=True), nullable=True)
    last_checked_at = mapped_column(DateTime(timezone=True), nullable=True)
    error_count = mapped_column(Integer, default=0, nullable=False)
    active = mapped_column(Boolean, default=True, nullable=False)


class Topic(Base):
    """Cluster of semantically similar items with a synthesized headline."""
    __tablename__ = "topics"

    id = mapped_column(PK, primary_key=True, autoincrement=True)
    title = mapped_column(String(800), nullable=False)
    title_localized = mapped_column(String(800), nullable=True)
    description = mapped_column(Text, nullable=True)
    description_localized = mapped_column(Text, nullable=True)
    canonical_item_id = mapped_column(BigInteger, nullable=True)  # founding item
    member_count = mapped_column(Integer, default=0, nullable=False)
    first_seen_at = mapped_column(DateTime(timezone=True), nullable=True)
    last_seen_at = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Item(Base):
    """One ingested content unit (article, tweet, video, post)."""
    __tablename__ = "items"

    id = mapped_column(PK, primary_key=True, autoincrement=True)
    url = mapped_column(String(2000), nullable=False)  # normalized
    source_type = mapped_column(String(32), default="default", nullable=False)
    source = mapped_column(String(200), nullable=True)  # provenance label

    title = mapped_column(String(800), nullable=False)
    title_localized = mapped_column(String(800), nullable=True)
    summary = mapped_column(Text, nullable=True)
    summary_localized = mapped_column(Text, nullable=True)
    content = mapped_column(Text, nullable=True)
    content_localized = mapped_column(Text, nullable=True)
    tags = mapped_column(JSON(none_as_null=True), nullable=True)
    keywords = mapped_column(JSON(none_as_null=True), nullable=True)
    embedding = mapped_column(JSON(none_as_null=True), nullable=True)  # L2-normalized floats
    og_image_url = mapped_column(String(2000), nullable=True)
    platform_metadata = mapped_column(JSON(none_as_null=True), nullable=True)  # {type, fetchedAt, data, enrichments}

    topic_id = mapped_column(ForeignKey("topics.id", ondelete="SET NULL"), nullable=True, index=True)

    published_at = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    ingested_at = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=True)

    __table_args__ = (UniqueConstraint("url", name="uq_items_url"),)


class WorkflowRun(Base):
    """One enrichment workflow instance for a single item."""
    __tablename__ = "workflow_runs"

    instance_id = mapped_column(String(200), primary_key=True)
    item_id = mapped_column(BigInteger, nullable=False, index=True)
    source_type = mapped_column(String(32), nullable=False)
    status = mapped_column(String(16), default="queued", nullable=False)  # queued|running|complete|errored|terminated
    output = mapped_column(JSON(none_as_null=True), nullable=True)
    error = mapped_column(Text, nullable=True)
    created_at = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class WorkflowCheckpoint(Base):
    """Persisted completion record of one workflow step."""
    __tablename__ = "workflow_checkpoints"

    id = mapped_column(PK, primary_key=True, autoincrement=True)
    instance_id = mapped_column(String(200), nullable=False)
    step_name = mapped_column(String(64), nullable=False)
    status = mapped_column(String(16), nullable=False)  # pending|done|failed
    result = mapped_column(JSON(none_as_null=True), nullable=True)
    attempts = mapped_column(Integer, default=0, nullable=False)
    error = mapped_column(Text, nullable=True)
    updated_at = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("instance_id", "step_name", name="uq_checkpoint_step"),)


# Indexes for the hot lookups: existence checks, clustering windows, sweeps
Index("ix_items_topic_published", Item.topic_id, Item.published_at)
Index("ix_items_source_type", Item.source_type)
Index("ix_checkpoints_instance", WorkflowCheckpoint.instance_id)
