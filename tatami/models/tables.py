"""
Database models: the "truth layer."

Design principles:
  - Ledger tables are append-only (contributions, admin_logs, referral_clicks)
  - Users, masters and content are soft-deleted (is_active / archived), never removed
  - referral_links.click_count is denormalised and only ever bumped in the
    same transaction as the referral_clicks insert
  - Only CONFIRMED conversions count as earnings
"""

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

from tatami.core.timeutil import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


def _created_at():
    return Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


def _updated_at():
    return Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(100), nullable=True)
    avatar = Column(Text, nullable=True)
    bio = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)

    role = Column(String(20), nullable=False, default="USER")
    permissions = Column(JSONType, nullable=True)           # per-user override, list of names
    is_active = Column(Boolean, nullable=False, default=True)
    locale = Column(String(10), nullable=False, default="en")
    referral_code = Column(String(32), nullable=True, unique=True, index=True)

    email_verified_at = Column(DateTime(timezone=True), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


class VerificationToken(Base):
    """Single-use magic-link tokens. Only the SHA-256 of the token is stored."""
    __tablename__ = "verification_tokens"

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(String(255), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = _created_at()


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------

class Master(Base):
    __tablename__ = "masters"

    id = Column(Uuid, primary_key=True, default=uuid4)

    name = Column(String(255), nullable=False)
    name_en = Column(String(255), nullable=True)
    name_ja = Column(String(255), nullable=True)
    title = Column(String(255), nullable=False)
    title_en = Column(String(255), nullable=True)
    title_ja = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    description_en = Column(Text, nullable=True)
    description_ja = Column(Text, nullable=True)
    bio = Column(Text, nullable=True)
    bio_en = Column(Text, nullable=True)
    bio_ja = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    location_en = Column(String(255), nullable=True)
    location_ja = Column(String(255), nullable=True)

    # --- Media ---
    hero_image = Column(Text, nullable=True)
    profile_video = Column(Text, nullable=True)
    intro_video = Column(Text, nullable=True)

    # --- Nested structures, JSON text parsed at the API boundary ---
    story_content = Column(Text, nullable=True)
    top_clips = Column(Text, nullable=True)
    mission_card = Column(Text, nullable=True)

    has_trip_product = Column(Boolean, nullable=False, default=False)
    trip_booking_url = Column(Text, nullable=True)
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = _created_at()
    updated_at = _updated_at()


class Interest(Base):
    __tablename__ = "interests"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    master_id = Column(Uuid, ForeignKey("masters.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="INTERESTED")
    message = Column(Text, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    __table_args__ = (
        UniqueConstraint("user_id", "master_id", name="uq_interests_user_master"),
    )


class Content(Base):
    __tablename__ = "contents"

    id = Column(Uuid, primary_key=True, default=uuid4)
    title = Column(String(255), nullable=False)
    title_en = Column(String(255), nullable=True)
    title_ja = Column(String(255), nullable=True)
    slug = Column(String(255), nullable=False, unique=True, index=True)
    type = Column(String(30), nullable=False, default="article")
    status = Column(String(20), nullable=False, default="draft", index=True)
    excerpt = Column(Text, nullable=False, default="")
    excerpt_en = Column(Text, nullable=True)
    excerpt_ja = Column(Text, nullable=True)
    body = Column(Text, nullable=False)
    cover_image = Column(Text, nullable=True)
    meta_title = Column(String(255), nullable=True)
    meta_description = Column(Text, nullable=True)

    author_id = Column(Uuid, ForeignKey("users.id"), nullable=True)
    last_edited_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------

class ReferralLink(Base):
    __tablename__ = "referral_links"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    code = Column(String(20), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    target_url = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # Denormalised: bumped atomically alongside each referral_clicks insert
    click_count = Column(Integer, nullable=False, default=0)

    created_at = _created_at()
    updated_at = _updated_at()


class ReferralClick(Base):
    """One row per tracked visit. Append-only apart from converted_at."""
    __tablename__ = "referral_clicks"

    id = Column(Uuid, primary_key=True, default=uuid4)
    referral_id = Column(Uuid, ForeignKey("referral_links.id", ondelete="CASCADE"), nullable=False)

    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    referer = Column(Text, nullable=True)

    # --- Parsed from UA ("Unknown" when the parser can't tell) ---
    device = Column(String(100), nullable=True)
    browser = Column(String(100), nullable=True)

    # --- Geo (null unless a lookup service is configured) ---
    country = Column(String(100), nullable=True)
    city = Column(String(100), nullable=True)

    created_at = _created_at()
    converted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_referral_clicks_referral_created", "referral_id", "created_at"),
    )


class Conversion(Base):
    __tablename__ = "conversions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    referral_id = Column(Uuid, ForeignKey("referral_links.id", ondelete="CASCADE"), nullable=False)
    click_id = Column(Uuid, nullable=True)
    order_id = Column(String(255), nullable=False)
    order_value_cents = Column(Integer, nullable=False, default=0)
    commission_cents = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="PENDING")
    product_type = Column(String(50), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    __table_args__ = (
        UniqueConstraint("referral_id", "order_id", name="uq_conversions_referral_order"),
        Index("ix_conversions_referral_status", "referral_id", "status"),
    )


# ---------------------------------------------------------------------------
# Ledgers (append-only)
# ---------------------------------------------------------------------------

class Contribution(Base):
    __tablename__ = "contributions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(30), nullable=False)               # LOGIN, SIGNUP, INTEREST, REFERRAL_CLICK, ...
    value = Column(Integer, nullable=False, default=0)      # points
    metadata_ = Column("metadata", JSONType, nullable=True)
    referral_id = Column(Uuid, nullable=True)               # kept after the link is gone
    created_at = _created_at()

    __table_args__ = (
        Index("ix_contributions_user_type", "user_id", "type"),
    )


class AdminLog(Base):
    __tablename__ = "admin_logs"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    entity_type = Column(String(30), nullable=True)
    entity_id = Column(String(64), nullable=True)
    details = Column(JSONType, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = _created_at()

    __table_args__ = (
        Index("ix_admin_logs_created", "created_at"),
    )
