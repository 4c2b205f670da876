#!/usr/bin/env python3
"""
GameLib - unified game library across Steam, PlayStation and Riot Games.
Syncs each linked platform into one de-duplicated collection and answers
library questions (combined view, rating eligibility, badge progress,
username availability) from the command line.
"""

import argparse
import json
import logging
import os
import sys
import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Dict, Optional

from colorama import init, Fore, Style
from dotenv import load_dotenv
from sqlalchemy.orm import sessionmaker

import database
from catalog_client import IGDBClient
from gamelib.errors import ConfigurationError, GameLibError, ValidationFailed
from gamelib.models import Platform
from gamelib.repositories import IdentityCacheRepository, LibraryRepository
from gamelib.services import (
    DebouncedValidator, IdentityResolver, LibraryService, PlayStationIdentityResolver,
    RiotIdentityResolver, SteamIdentityResolver, SyncOrchestrator,
    UsernameAvailabilityService, ValidationRetrier,
)
from platform_clients import build_adapters

# Initialize colorama for cross-platform colored terminal output
init(autoreset=True)

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(level: str = 'WARNING') -> logging.Logger:
    """Configure the root GameLib logger.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to WARNING so normal use is quiet.

    Returns:
        Configured logger instance.
    """
    numeric = getattr(logging, str(level).upper(), logging.WARNING)
    logger = logging.getLogger('gamelib')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(numeric)
    return logger


# Module-level logger used throughout gamelib_cli.py
logger = setup_logging()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: Dict[str, Any] = {
    'steam_api_key': '',
    'riot_api_key': '',
    'igdb_client_id': '',
    'igdb_client_secret': '',
    'database_url': database.DATABASE_URL,
    'identity_cache_path': '.gamelib_identity_cache.json',
    'log_level': 'WARNING',
    'http_timeout': 10,
    'sync_timeout': 60,
    'min_rating_hours': 2.0,
    'username_retry_attempts': 3,
    'username_retry_base_delay': 0.5,
    'username_quiet_period': 0.5,
    'persist_conflict_retries': 3,
}

# env var -> (config key, converter)
_ENV_OVERRIDES = {
    'STEAM_API_KEY': ('steam_api_key', str),
    'RIOT_API_KEY': ('riot_api_key', str),
    'IGDB_CLIENT_ID': ('igdb_client_id', str),
    'IGDB_CLIENT_SECRET': ('igdb_client_secret', str),
    'DATABASE_URL': ('database_url', str),
    'GAMELIB_LOG_LEVEL': ('log_level', str),
    'GAMELIB_HTTP_TIMEOUT': ('http_timeout', int),
    'GAMELIB_IDENTITY_CACHE': ('identity_cache_path', str),
}

_PLACEHOLDER_VALUES = {'DEMO_MODE', 'DEMO_KEY', 'CHANGE_ME'}

MAX_INPUT_DEBOUNCERS = 1024


def is_placeholder_value(value) -> bool:
    """Check if a value is a placeholder/demo sentinel that should not be used for real API calls."""
    if not value or not isinstance(value, str):
        return True
    return value.startswith('YOUR_') or value in _PLACEHOLDER_VALUES


def minutes_to_hours(minutes: int) -> float:
    """Convert playtime from minutes to hours

    Args:
        minutes: Playtime in minutes

    Returns:
        Playtime in hours, rounded to 1 decimal place
    """
    return round(minutes / 60, 1)


def load_config(config_path: str = 'config.json') -> Dict[str, Any]:
    """Load configuration from JSON file with environment variable support

    A missing file is not an error: defaults plus environment apply.
    Environment variables take precedence over config file values:
    - STEAM_API_KEY overrides steam_api_key
    - RIOT_API_KEY overrides riot_api_key
    - IGDB_CLIENT_ID / IGDB_CLIENT_SECRET override the catalog credentials
    - DATABASE_URL overrides database_url
    - GAMELIB_LOG_LEVEL, GAMELIB_HTTP_TIMEOUT, GAMELIB_IDENTITY_CACHE

    Placeholder values (``YOUR_...``) are blanked so callers can test
    ``if config['steam_api_key']``.

    Raises:
        ConfigurationError: the file exists but is not valid JSON, or an
            environment override has the wrong type.
    """
    load_dotenv()
    config = dict(DEFAULT_CONFIG)
    if os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                loaded = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigurationError(f"Error parsing config file {config_path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a JSON object")
        config.update(loaded)
    else:
        logger.info(f"Config file {config_path} not found, using defaults")

    for env_name, (key, convert) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw:
            try:
                config[key] = convert(raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_name}: {raw!r}") from e

    for key in ('steam_api_key', 'riot_api_key', 'igdb_client_id', 'igdb_client_secret'):
        if is_placeholder_value(config.get(key)):
            config[key] = ''
    return config


# ---------------------------------------------------------------------------
# Application container
# ---------------------------------------------------------------------------

class GameLibApp:
    """Wires storage, catalog, adapters and services for one configuration.

    Both the CLI and the Flask API go through this object; nothing else
    builds services.
    """

    def __init__(self, config: Dict[str, Any], engine=None, catalog=None,
                 adapter_factory=build_adapters, sleep=None) -> None:
        """
        Args:
            config:          Output of :func:`load_config`.
            engine:          Optional SQLAlchemy engine (tests pass SQLite).
            catalog:         Optional catalog client; built from the IGDB
                credentials in *config* when omitted.
            adapter_factory: ``(config, on_psn_tokens_refreshed) -> {Platform: adapter}``;
                called once per sync, and every adapter is closed afterwards.
            sleep:           Optional sleep function for the username retrier.
        """
        self.config = config
        self.engine = engine if engine is not None else database.make_engine(config['database_url'])
        self.session_factory = sessionmaker(autoflush=False, bind=self.engine)
        self._adapter_factory = adapter_factory

        if catalog is None and config.get('igdb_client_id') and config.get('igdb_client_secret'):
            catalog = IGDBClient(config['igdb_client_id'], config['igdb_client_secret'],
                                 timeout=int(config.get('http_timeout') or 10))
        self.catalog = catalog

        strategies = {Platform.RIOT: RiotIdentityResolver()}
        if catalog is not None:
            strategies[Platform.STEAM] = SteamIdentityResolver(catalog)
            strategies[Platform.PLAYSTATION] = PlayStationIdentityResolver(catalog)
        else:
            logger.warning("IGDB credentials not configured; only Riot titles can be resolved")
        self.identity_cache = IdentityCacheRepository(config['identity_cache_path'])
        self.resolver = IdentityResolver(strategies, self.identity_cache)

        self.repository = LibraryRepository(database)
        self.library = LibraryService(database, self.repository,
                                      min_rating_hours=float(config['min_rating_hours']),
                                      conflict_retries=int(config['persist_conflict_retries']))
        retrier_kwargs = {'sleep': sleep} if sleep is not None else {}
        retrier = ValidationRetrier(max_attempts=int(config['username_retry_attempts']),
                                    base_delay=float(config['username_retry_base_delay']),
                                    **retrier_kwargs)
        self.usernames = UsernameAvailabilityService(database, self.session_factory, retrier)
        self._debounce_kwargs = dict(quiet_period=float(config['username_quiet_period']),
                                     **retrier_kwargs)
        self.username_debouncer = DebouncedValidator(self.usernames.check, **self._debounce_kwargs)
        # One debouncer per live input (a form field in one browser tab), oldest evicted first
        self._input_debouncers: 'OrderedDict[str, DebouncedValidator]' = OrderedDict()
        self._input_debouncers_lock = threading.Lock()

    def init_db(self) -> bool:
        return database.init_db(bind=self.engine)

    @contextmanager
    def session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    def sync_full_library(self, user_id: str, platform, timeout: Optional[float] = None):
        """Sync one linked platform for *user_id* and return its SyncResult."""
        platform = Platform.parse(platform)
        if not platform.is_syncable:
            raise ValidationFailed("Manual entries have nothing to sync")
        with self.session() as db:
            credential = database.get_platform_credential(db, user_id, platform)
        if credential is None:
            raise ValidationFailed(f"No {platform.value} account linked for this user")

        def save_tokens(access_token: str, refresh_token: str) -> None:
            with self.session() as db:
                database.save_psn_tokens(db, user_id, access_token, refresh_token)

        if timeout is None:
            timeout = self.config.get('sync_timeout')
        adapters = self._adapter_factory(self.config, save_tokens)
        try:
            orchestrator = SyncOrchestrator(
                adapters, self.resolver, self.repository, self.session_factory,
                db_module=database, catalog=self.catalog,
                conflict_retries=int(self.config['persist_conflict_retries']),
            )
            return orchestrator.sync_full_library(user_id, credential, timeout=timeout)
        finally:
            for adapter in adapters.values():
                adapter.close()

    def get_combined_library(self, user_id: str):
        with self.session() as db:
            return self.library.get_combined_library(db, user_id)

    def can_rate(self, user_id: str, catalog_id: int):
        with self.session() as db:
            return self.library.can_rate(db, user_id, catalog_id)

    def badge_progress(self, user_id: str):
        with self.session() as db:
            return self.library.badge_progress_for_user(db, user_id)

    def debouncer_for(self, input_key: Optional[str] = None) -> DebouncedValidator:
        """Return the debouncer for one live input; ``None`` is the shared one."""
        if input_key is None:
            return self.username_debouncer
        with self._input_debouncers_lock:
            debouncer = self._input_debouncers.pop(input_key, None)
            if debouncer is None:
                debouncer = DebouncedValidator(self.usernames.check, **self._debounce_kwargs)
            self._input_debouncers[input_key] = debouncer
            while len(self._input_debouncers) > MAX_INPUT_DEBOUNCERS:
                self._input_debouncers.popitem(last=False)
            return debouncer

    def check_username_available(self, candidate: str, exclude_user_id: str = None,
                                 debounce: bool = False, input_key: Optional[str] = None):
        """Check *candidate*.

        With *debounce* (implied by *input_key*) the check waits for the quiet
        period and returns ``None`` when a newer value for the same input
        superseded it.
        """
        if debounce or input_key is not None:
            return self.debouncer_for(input_key).submit(candidate,
                                                        exclude_user_id=exclude_user_id)
        return self.usernames.check(candidate, exclude_user_id=exclude_user_id)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _print_error(error: GameLibError) -> None:
    print(f"{Fore.RED}Error [{error.code}]: {error.message}")


def cmd_init_db(app: GameLibApp, args) -> int:
    if app.init_db():
        print(f"{Fore.GREEN}Database initialised")
        return 0
    print(f"{Fore.RED}Database initialisation failed, see log output")
    return 1


def cmd_sync(app: GameLibApp, args) -> int:
    print(f"{Fore.CYAN}Syncing {args.platform} library for {args.user_id}...")
    result = app.sync_full_library(args.user_id, args.platform, timeout=args.timeout)
    print(f"{Fore.GREEN}Imported: {Fore.WHITE}{result.imported}")
    print(f"{Fore.YELLOW}Updated: {Fore.WHITE}{result.updated}")
    print(f"{Fore.WHITE}Unchanged: {result.unchanged}")
    colour = Fore.RED if result.failed else Fore.WHITE
    print(f"{colour}Failed: {result.failed}")
    for message in result.errors:
        print(f"  {Fore.RED}- {message}")
    return 0


def cmd_library(app: GameLibApp, args) -> int:
    combined = app.get_combined_library(args.user_id)
    if not combined:
        print(f"{Fore.YELLOW}Library is empty")
        return 0
    total_minutes = 0
    for item in combined:
        entry = item.entry
        total_minutes += entry.playtime_minutes
        name = item.game.name if item.game else f"Game {entry.catalog_id}"
        platforms = ', '.join(sorted(p.value for p in item.platforms))
        status = entry.status.value if entry.status else '-'
        print(f"{Fore.CYAN}{Style.BRIGHT}{name}{Style.RESET_ALL} "
              f"{Fore.WHITE}{minutes_to_hours(entry.playtime_minutes):.1f} h "
              f"{Fore.YELLOW}[{platforms}] {Fore.WHITE}{status}")
    print(f"\n{Fore.GREEN}Total: {len(combined)} games, "
          f"{minutes_to_hours(total_minutes):.1f} hours")
    return 0


def cmd_can_rate(app: GameLibApp, args) -> int:
    eligibility = app.can_rate(args.user_id, args.catalog_id)
    if eligibility.can_rate:
        print(f"{Fore.GREEN}Yes ({eligibility.playtime_hours:.1f} h played)")
        return 0
    print(f"{Fore.YELLOW}No: {eligibility.reason}")
    return 0


def cmd_badges(app: GameLibApp, args) -> int:
    progress = app.badge_progress(args.user_id)
    current = progress.current_tier.name if progress.current_tier else 'None'
    print(f"{Fore.CYAN}Completed games: {Fore.WHITE}{progress.completed_games}")
    print(f"{Fore.CYAN}Current badge: {Fore.WHITE}{current}")
    if progress.at_max_tier:
        print(f"{Fore.GREEN}Highest badge reached!")
    else:
        print(f"{Fore.CYAN}Next badge: {Fore.WHITE}{progress.next_tier.name} "
              f"({progress.progress * 100:.0f}%, {progress.remaining_games} to go)")
    return 0


def cmd_check_username(app: GameLibApp, args) -> int:
    check = app.check_username_available(args.username, exclude_user_id=args.exclude_user)
    colours = {'available': Fore.GREEN, 'taken': Fore.RED,
               'invalid': Fore.RED, 'unverified': Fore.YELLOW}
    print(f"{colours[check.status.value]}{check.username}: {check.status.value}"
          + (f" ({check.message})" if check.message else ''))
    return 0 if check.available else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='GameLib - unified game library tracker',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 gamelib_cli.py init-db
  python3 gamelib_cli.py sync USER_ID steam
  python3 gamelib_cli.py library USER_ID
  python3 gamelib_cli.py can-rate USER_ID 72
  python3 gamelib_cli.py check-username new_player
        """
    )
    parser.add_argument(
        '--config', '-c',
        default='config.json',
        help='Path to config file (default: config.json)'
    )
    parser.add_argument(
        '--log-level',
        help='Override the configured log level (DEBUG, INFO, WARNING, ...)'
    )
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('init-db', help='Create tables and seed badge tiers')

    p = sub.add_parser('sync', help='Sync one linked platform')
    p.add_argument('user_id')
    p.add_argument('platform', help='steam, playstation (psn) or riot')
    p.add_argument('--timeout', type=float, help='Overall fetch deadline in seconds')

    p = sub.add_parser('library', help='Show the combined library')
    p.add_argument('user_id')

    p = sub.add_parser('can-rate', help='Check whether a game can be rated')
    p.add_argument('user_id')
    p.add_argument('catalog_id', type=int)

    p = sub.add_parser('badges', help='Show badge tier progress')
    p.add_argument('user_id')

    p = sub.add_parser('check-username', help='Check username availability')
    p.add_argument('username')
    p.add_argument('--exclude-user', help='Ignore this user id (renaming yourself)')
    return parser


COMMANDS = {
    'init-db': cmd_init_db,
    'sync': cmd_sync,
    'library': cmd_library,
    'can-rate': cmd_can_rate,
    'badges': cmd_badges,
    'check-username': cmd_check_username,
}


def main(argv=None, app: GameLibApp = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    try:
        if app is None:
            config = load_config(args.config)
            setup_logging(args.log_level or config.get('log_level', 'WARNING'))
            app = GameLibApp(config)
        elif args.log_level:
            setup_logging(args.log_level)
        return COMMANDS[args.command](app, args)
    except GameLibError as e:
        _print_error(e)
        return 1
    except KeyboardInterrupt:
        print(f"\n{Fore.YELLOW}Interrupted")
        return 130


if __name__ == '__main__':
    sys.exit(main())
