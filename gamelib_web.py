#!/usr/bin/env python3
"""
GameLib Web API - JSON endpoints over the unified game library.
Exposes sync, the combined library view, curation, rating eligibility,
badge progress and username availability.
"""

import argparse
import logging
import os
import threading
from typing import Optional

from flask import Flask, jsonify, request

import gamelib_cli
from catalog_client import CatalogAPIError, CatalogAuthError
from gamelib.errors import (
    AuthExpired, ConfigurationError, EntryNotFound, FetchTimeout, GameLibError,
    NetworkError, PersistenceError, RateLimited, ValidationFailed,
)

# Initialize logging early so database module logs are captured
log_level = os.getenv('GAMELIB_LOG_LEVEL', 'INFO')
gamelib_cli.setup_logging(log_level)
web_logger = logging.getLogger('gamelib.web')

app = Flask(__name__)

# Application container, created on first request (tests assign their own)
gamelib_app: Optional[gamelib_cli.GameLibApp] = None
gamelib_app_lock = threading.Lock()
config_path = os.getenv('GAMELIB_CONFIG', 'config.json')

# Most specific class first; the first isinstance match wins.
_ERROR_STATUS = (
    (AuthExpired, 401),
    (RateLimited, 429),
    (FetchTimeout, 504),
    (NetworkError, 502),
    (CatalogAuthError, 502),
    (CatalogAPIError, 502),
    (EntryNotFound, 404),
    (ValidationFailed, 400),
    (PersistenceError, 500),
    (ConfigurationError, 500),
)


def get_app() -> gamelib_cli.GameLibApp:
    """Return the shared :class:`GameLibApp`, building it from config on first use."""
    global gamelib_app
    with gamelib_app_lock:
        if gamelib_app is None:
            config = gamelib_cli.load_config(config_path)
            gamelib_app = gamelib_cli.GameLibApp(config)
            if not gamelib_app.init_db():
                web_logger.warning('Database initialization reported failure')
        return gamelib_app


def status_for(error: GameLibError) -> int:
    for cls, status in _ERROR_STATUS:
        if isinstance(error, cls):
            return status
    return 500


@app.errorhandler(GameLibError)
def handle_gamelib_error(e):
    """Turn any GameLib error into its JSON body and HTTP status."""
    status = status_for(e)
    if status >= 500:
        web_logger.error(f"{e.code}: {e.message}")
    body = e.to_dict()
    if isinstance(e, RateLimited) and e.retry_after is not None:
        body['retry_after'] = e.retry_after
    return jsonify(body), status


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationFailed('Request body must be a JSON object')
    return data


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route('/api/status')
def api_status():
    """Liveness and configured platforms."""
    gl = get_app()
    return jsonify({
        'ok': True,
        'catalog_configured': gl.catalog is not None,
        'steam_configured': bool(gl.config.get('steam_api_key')),
        'riot_configured': bool(gl.config.get('riot_api_key')),
    })


@app.route('/api/users/<user_id>/sync/<platform>', methods=['POST'])
def api_sync(user_id, platform):
    """Run a full sync of one linked platform."""
    timeout = _json_body().get('timeout')
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            raise ValidationFailed('timeout must be a number of seconds') from None
        if timeout <= 0:
            raise ValidationFailed('timeout must be positive')
    result = get_app().sync_full_library(user_id, platform, timeout=timeout)
    web_logger.info(f"Sync {platform} for {user_id}: {result.to_dict()}")
    return jsonify(result.to_dict())


@app.route('/api/users/<user_id>/library')
def api_library(user_id):
    """Combined library, one item per game, most played first."""
    combined = get_app().get_combined_library(user_id)
    return jsonify({
        'games': [item.to_dict() for item in combined],
        'count': len(combined),
    })


@app.route('/api/users/<user_id>/library/stats')
def api_library_stats(user_id):
    gl = get_app()
    with gl.session() as db:
        return jsonify(gl.library.library_stats(db, user_id))


@app.route('/api/users/<user_id>/games/<int:catalog_id>/can-rate')
def api_can_rate(user_id, catalog_id):
    return jsonify(get_app().can_rate(user_id, catalog_id).to_dict())


@app.route('/api/users/<user_id>/games', methods=['POST'])
def api_add_game(user_id):
    """Add a manual (or wishlist) entry."""
    data = _json_body()
    try:
        catalog_id = int(data['catalog_id'])
    except (KeyError, TypeError, ValueError):
        raise ValidationFailed('catalog_id is required and must be an integer') from None
    gl = get_app()
    with gl.session() as db:
        entry = gl.library.add_manual_entry(db, user_id, catalog_id,
                                            status=data.get('status', 'wishlist'),
                                            name=data.get('name'))
    return jsonify(entry.to_dict()), 201


@app.route('/api/users/<user_id>/games/<int:catalog_id>', methods=['PATCH'])
def api_update_game(user_id, catalog_id):
    """Update status, rating or notes; only the keys present are changed."""
    data = _json_body()
    changes = {key: data[key] for key in ('status', 'rating', 'notes') if key in data}
    if not changes:
        raise ValidationFailed('Nothing to update: send status, rating or notes')
    gl = get_app()
    with gl.session() as db:
        entry = gl.library.update_entry(db, user_id, catalog_id, **changes)
    return jsonify(entry.to_dict())


@app.route('/api/users/<user_id>/games/<int:catalog_id>', methods=['DELETE'])
def api_remove_game(user_id, catalog_id):
    gl = get_app()
    with gl.session() as db:
        gl.library.remove_entry(db, user_id, catalog_id)
    return jsonify({'removed': catalog_id})


@app.route('/api/users/<user_id>/platforms/<platform>', methods=['DELETE'])
def api_unlink_platform(user_id, platform):
    gl = get_app()
    with gl.session() as db:
        changed = gl.library.unlink_platform(db, user_id, platform)
    return jsonify({'unlinked': platform, 'entries_updated': changed})


@app.route('/api/users/<user_id>/badges/progress')
def api_badge_progress(user_id):
    return jsonify(get_app().badge_progress(user_id).to_dict())


@app.route('/api/usernames/<candidate>/availability')
def api_username_availability(candidate):
    """Availability of *candidate*; ``unverified`` when the check kept failing.

    Live-typing clients pass ``input_session`` (any id stable for one form
    field).  Requests sharing it are debounced, and a request overtaken by a
    newer value for the same field answers ``superseded`` without a verdict.
    """
    input_key = request.args.get('input_session') or None
    check = get_app().check_username_available(
        candidate, exclude_user_id=request.args.get('exclude_user'), input_key=input_key)
    if check is None:
        return jsonify({'username': candidate, 'status': 'superseded',
                        'available': False, 'message': 'A newer value was submitted'})
    return jsonify(check.to_dict())


def main():
    """Main entry point for the web API"""
    global config_path
    parser = argparse.ArgumentParser(description='GameLib Web API')
    parser.add_argument('--config', default=config_path, help='Path to config file')
    parser.add_argument('--host', default='127.0.0.1')
    parser.add_argument('--port', type=int, default=5000)
    args = parser.parse_args()
    config_path = args.config
    get_app()

    print("\n" + "=" * 60)
    print("GameLib Web API is starting...")
    print("=" * 60)
    print(f"\n  http://{args.host}:{args.port}/api/status")
    print("\nPress Ctrl+C to stop the server")
    print("=" * 60 + "\n")
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == '__main__':
    main()
