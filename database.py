#!/usr/bin/env python3
"""
Database models and configuration for GameLib.
Handles user profiles with linked platform accounts, the canonical game
catalog, per-user library entries and badge tiers.

Any SQLAlchemy URL works; PostgreSQL is used in production and SQLite for
local runs and tests.
"""

import json
import logging
import os
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint,
    create_engine, func,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from gamelib.errors import TransientProbeError
from gamelib.models import BadgeTier, CanonicalGame, Platform, PlatformCredential

logger = logging.getLogger('gamelib.database')

DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///gamelib.db')

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


def _new_id():
    return str(uuid.uuid4())


def make_engine(url: str, echo: bool = False):
    """Create an engine for *url*; SQLite connections may be shared across threads."""
    connect_args = {"check_same_thread": False} if url.startswith('sqlite') else {}
    return create_engine(url, echo=echo, connect_args=connect_args)


def create_session_factory(url: str, echo: bool = False):
    """Build an engine for *url* and return a bound ``sessionmaker``."""
    return sessionmaker(autoflush=False, bind=make_engine(url, echo))


try:
    engine = make_engine(DATABASE_URL)
    SessionLocal = sessionmaker(autoflush=False, bind=engine)
except Exception as e:
    logger.warning(f"Database engine unavailable for {DATABASE_URL}: {e}")
    engine = None
    SessionLocal = None


class User(Base):
    """User profile with linked platform accounts."""
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, default=_new_id)
    username = Column(String(20), unique=True, index=True, nullable=True)
    steam_id = Column(String(20), nullable=True)
    psn_access_token = Column(Text, nullable=True)
    psn_refresh_token = Column(Text, nullable=True)
    psn_linked_at = Column(DateTime(timezone=True), nullable=True)
    riot_puuid = Column(String(100), nullable=True)
    riot_region = Column(String(10), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Relationships
    library_entries = relationship("LibraryEntryRecord", back_populates="user",
                                   cascade="all, delete-orphan")


class Game(Base):
    """Canonical catalog game, keyed by the catalog (IGDB) id."""
    __tablename__ = "games"

    catalog_id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(500), nullable=False)
    cover_url = Column(String(1000), nullable=True)
    genres = Column(Text, default='[]')  # JSON array
    platforms_tagged = Column(Text, default='[]')  # JSON array
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class LibraryEntryRecord(Base):
    """One row per (user, catalog game). ``version`` guards concurrent writers."""
    __tablename__ = "library_entries"
    __table_args__ = (
        UniqueConstraint('user_id', 'catalog_id', name='uq_library_entries_user_game'),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), ForeignKey("users.id"), index=True, nullable=False)
    catalog_id = Column(Integer, index=True, nullable=False)
    status = Column(String(20), nullable=True)  # wishlist / playing / completed / dropped
    rating = Column(Integer, nullable=True)  # 1-10
    notes = Column(Text, nullable=True)
    source_platforms = Column(Text, default='[]')  # JSON array of platform names
    steam_app_id = Column(Integer, nullable=True, index=True)
    psn_title_id = Column(String(64), nullable=True, index=True)
    riot_game_id = Column(String(32), nullable=True)
    playtime_minutes = Column(Integer, default=0, nullable=False)
    ranked_data = Column(Text, nullable=True)  # JSON object
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    version = Column(Integer, default=0, nullable=False)

    # Relationships
    user = relationship("User", back_populates="library_entries")


class Badge(Base):
    """Badge tier earned by completing a number of games."""
    __tablename__ = "badges"

    tier = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(100), nullable=False)
    description = Column(String(500), default='')
    required_games = Column(Integer, nullable=False)
    icon_name = Column(String(50), default='')


DEFAULT_BADGES = [
    (0, 'Newcomer', 'Welcome to your game collection!', 0, 'star'),
    (1, 'Game Lover', 'Completed your first 25 games', 25, 'trophy'),
    (2, 'Collector', '50 completed games is impressive', 50, 'medal'),
    (3, 'Expert Player', '100 games, a true gamer', 100, 'crown'),
    (4, 'Legend', '250 completed games is legendary', 250, 'gem'),
    (5, 'Immortal', '500+ games completed', 500, 'fire'),
]


def get_db():
    """Get database session."""
    if SessionLocal:
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()
    else:
        yield None


def init_db(bind=None):
    """Initialize database tables and seed the badge tiers."""
    bind = bind or engine
    if bind is None:
        return False
    try:
        Base.metadata.create_all(bind=bind)
        session = sessionmaker(bind=bind)()
        try:
            seed_badges(session)
        finally:
            session.close()
        logger.info("Database tables initialized successfully")
        return True
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize database: {e}")
        return False


# ---------------------------------------------------------------------------
# Users and linked accounts
# ---------------------------------------------------------------------------

def get_user(db, user_id: str):
    """Get user by id."""
    if not db:
        return None
    try:
        return db.query(User).filter(User.id == user_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error getting user: {e}")
        return None


def get_user_by_username(db, username: str):
    """Get user by username (case-insensitive)."""
    if not db or not username:
        return None
    try:
        return db.query(User).filter(func.lower(User.username) == username.lower()).first()
    except SQLAlchemyError as e:
        logger.error(f"Error getting user: {e}")
        return None


def create_or_update_user(db, user_id: str = None, username: str = None, steam_id: str = None,
                          riot_puuid: str = None, riot_region: str = None):
    """Create a user, or update the given fields of an existing one.

    Fields passed as ``None`` are left untouched on update.
    """
    if not db:
        return None
    try:
        user = db.query(User).filter(User.id == user_id).first() if user_id else None
        if user is None:
            user = User(id=user_id or _new_id())
            db.add(user)
        if username is not None:
            user.username = username
        if steam_id is not None:
            user.steam_id = steam_id
        if riot_puuid is not None:
            user.riot_puuid = riot_puuid
        if riot_region is not None:
            user.riot_region = riot_region
        db.commit()
        return user
    except SQLAlchemyError as e:
        logger.error(f"Error creating/updating user: {e}")
        db.rollback()
        return None


def is_username_available(db, username: str, exclude_user_id: str = None) -> bool:
    """Return True if no other profile uses *username* (case-insensitive).

    Raises:
        TransientProbeError: the lookup itself failed.
    """
    if not db:
        raise TransientProbeError("Database not available")
    try:
        query = db.query(User.id).filter(func.lower(User.username) == username.lower())
        if exclude_user_id:
            query = query.filter(User.id != exclude_user_id)
        return query.first() is None
    except SQLAlchemyError as e:
        logger.warning(f"Username lookup failed: {e}")
        db.rollback()
        raise TransientProbeError("Could not verify username, try again") from e


def update_username(db, user_id: str, username: str) -> bool:
    """Set the username for *user_id*."""
    if not db:
        return False
    try:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            return False
        user.username = username
        db.commit()
        return True
    except SQLAlchemyError as e:
        logger.error(f"Error updating username: {e}")
        db.rollback()
        return False


def get_platform_credential(db, user_id: str, platform: Platform):
    """Return the linked :class:`PlatformCredential` for *platform*, or None."""
    user = get_user(db, user_id)
    if not user:
        return None
    if platform is Platform.STEAM:
        if not user.steam_id:
            return None
        return PlatformCredential(platform, account_id=user.steam_id)
    if platform is Platform.PLAYSTATION:
        if not user.psn_access_token and not user.psn_refresh_token:
            return None
        return PlatformCredential(platform,
                                  access_token=user.psn_access_token,
                                  refresh_token=user.psn_refresh_token)
    if platform is Platform.RIOT:
        if not user.riot_puuid:
            return None
        return PlatformCredential(platform, account_id=user.riot_puuid,
                                  region=user.riot_region or 'euw1')
    return None


def save_psn_tokens(db, user_id: str, access_token: str, refresh_token: str) -> bool:
    """Persist a (possibly rotated) PSN token pair for *user_id*."""
    if not db:
        return False
    try:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            return False
        if not user.psn_linked_at:
            user.psn_linked_at = _utcnow()
        user.psn_access_token = access_token
        user.psn_refresh_token = refresh_token
        db.commit()
        logger.info(f"Saved PSN tokens for user {user_id}")
        return True
    except SQLAlchemyError as e:
        logger.error(f"Error saving PSN tokens: {e}")
        db.rollback()
        return False


def clear_platform_link(db, user_id: str, platform: Platform) -> bool:
    """Forget the linked account for *platform* on *user_id*."""
    if not db:
        return False
    try:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            return False
        if platform is Platform.STEAM:
            user.steam_id = None
        elif platform is Platform.PLAYSTATION:
            user.psn_access_token = None
            user.psn_refresh_token = None
            user.psn_linked_at = None
        elif platform is Platform.RIOT:
            user.riot_puuid = None
            user.riot_region = None
        db.commit()
        logger.info(f"Cleared {platform.value} link for user {user_id}")
        return True
    except SQLAlchemyError as e:
        logger.error(f"Error clearing platform link: {e}")
        db.rollback()
        return False


# ---------------------------------------------------------------------------
# Canonical game catalog
# ---------------------------------------------------------------------------

def _load_json_list(value) -> list:
    try:
        data = json.loads(value or '[]')
        return data if isinstance(data, list) else []
    except (TypeError, ValueError):
        return []


def game_to_canonical(row: Game) -> CanonicalGame:
    return CanonicalGame(
        catalog_id=row.catalog_id,
        name=row.name,
        cover_url=row.cover_url,
        genres=frozenset(_load_json_list(row.genres)),
        platforms_tagged=frozenset(_load_json_list(row.platforms_tagged)),
    )


def ensure_game(db, catalog_id: int, name: str, cover_url: str = None,
                genres=None, platform: str = None):
    """Insert the catalog game once; afterwards only add the platform tag.

    Name, cover and genres of an already observed game are never rewritten.
    """
    if not db:
        return None
    try:
        game = db.query(Game).filter(Game.catalog_id == catalog_id).first()
        if game is None:
            game = Game(
                catalog_id=catalog_id,
                name=name or f'Game {catalog_id}',
                cover_url=cover_url,
                genres=json.dumps(sorted(set(genres or []))),
                platforms_tagged=json.dumps([platform] if platform else []),
            )
            db.add(game)
        elif platform:
            tags = set(_load_json_list(game.platforms_tagged))
            if platform not in tags:
                tags.add(platform)
                game.platforms_tagged = json.dumps(sorted(tags))
        db.commit()
        return game_to_canonical(game)
    except SQLAlchemyError as e:
        logger.error(f"Error saving game {catalog_id}: {e}")
        db.rollback()
        return None


def get_games(db, catalog_ids) -> dict:
    """Return ``{catalog_id: CanonicalGame}`` for the ids that are known."""
    if not db:
        return {}
    ids = list(set(catalog_ids))
    if not ids:
        return {}
    try:
        rows = db.query(Game).filter(Game.catalog_id.in_(ids)).all()
        return {row.catalog_id: game_to_canonical(row) for row in rows}
    except SQLAlchemyError as e:
        logger.error(f"Error loading games: {e}")
        return {}


def get_known_catalog_ids(db) -> set:
    """Return every catalog id present in the games table."""
    if not db:
        return set()
    try:
        return {row[0] for row in db.query(Game.catalog_id).all()}
    except SQLAlchemyError as e:
        logger.error(f"Error loading catalog ids: {e}")
        return set()


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------

def seed_badges(db) -> int:
    """Insert the default badge tiers that are missing. Returns rows added."""
    if not db:
        return 0
    try:
        existing = {row[0] for row in db.query(Badge.tier).all()}
        added = 0
        for tier, name, description, required, icon in DEFAULT_BADGES:
            if tier in existing:
                continue
            db.add(Badge(tier=tier, name=name, description=description,
                         required_games=required, icon_name=icon))
            added += 1
        db.commit()
        return added
    except SQLAlchemyError as e:
        logger.error(f"Error seeding badges: {e}")
        db.rollback()
        return 0


def get_badges(db):
    """Return all badge tiers sorted by required game count."""
    if not db:
        return []
    try:
        rows = db.query(Badge).order_by(Badge.required_games, Badge.tier).all()
        return [BadgeTier(tier=r.tier, required_games=r.required_games, name=r.name,
                          description=r.description or '', icon_name=r.icon_name or '')
                for r in rows]
    except SQLAlchemyError as e:
        logger.error(f"Error loading badges: {e}")
        return []
