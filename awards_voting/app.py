"""
Flask application for the awards voting front-end.

Serves JSON for the category list, nomination pages, voting actions and
statistics on top of the voting service. Each browser gets its own storage
namespace, keyed by an id in the Flask session cookie. It holds the identity,
the results mirror and the local-only part of each nomination page
(selection, revoting, undismissed error).
"""
import logging
import uuid
from functools import wraps
from typing import Optional

import httpx
from flask import Flask, Response, g, jsonify, request, session, url_for
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .api import VotingApiClient
from .config import Settings, settings
from .errors import AuthError, NotFoundError, RemoteError, ValidationError
from .results import ResultsMirror, aggregate_statistics, category_totals, format_vote_count
from .session import SessionContext
from .storage import KeyValueStore, RedisStore, get_storage_key, open_store
from .voting import NominationController

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO) if not settings.DEBUG else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _form() -> dict:
    return request.get_json(silent=True) or request.form.to_dict()


def create_app(
    config: Optional[Settings] = None,
    store: Optional[KeyValueStore] = None,
    transport: Optional[httpx.BaseTransport] = None
) -> Flask:
    """
    Build the Flask app.

    Args:
        config: Settings (defaults to environment)
        store: Root local storage (defaults to ``config.storage_url``)
        transport: httpx transport for the voting service, for tests
    """
    config = config or settings
    app = Flask(__name__)
    app.config['SECRET_KEY'] = config.SECRET_KEY
    app.config['DEBUG'] = config.DEBUG

    root_store = store or open_store(
        config.storage_url,
        namespace=config.STORAGE_PREFIX,
        max_connections=config.REDIS_MAX_CONNECTIONS
    )
    logger.info(f"{config.SERVICE_NAME} using voting service at {config.API_BASE_URL}")

    def browser_store() -> KeyValueStore:
        sid = session.get('sid')
        if not sid:
            sid = uuid.uuid4().hex
            session['sid'] = sid
        return root_store.scoped(sid)

    @app.before_request
    def build_context():
        local = browser_store()
        g.session_ctx = SessionContext(local)
        g.mirror = ResultsMirror(local)
        g.api = VotingApiClient(g.session_ctx, transport=transport, config=config)

    @app.teardown_request
    def close_context(exc):
        api = g.pop('api', None)
        if api is not None:
            api.close()

    def login_required(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not g.session_ctx.is_authenticated():
                raise AuthError("Login required")
            return view(*args, **kwargs)
        return wrapped

    def load_controller(category_id: int) -> NominationController:
        controller = NominationController(
            g.api, g.session_ctx, g.mirror, category_id, busy_ttl=config.VOTE_LOCK_TTL
        )
        controller.load()
        return controller.restore(g.session_ctx.store.get_json(get_storage_key('nomination', category_id)))

    def nomination_response(controller: NominationController, changed: bool = True):
        g.session_ctx.store.set_json(get_storage_key('nomination', controller.category_id), controller.snapshot())
        body = controller.view().to_dict(config.LOCALE)
        body['success'] = changed
        return jsonify(body), 200

    # Error handling

    @app.errorhandler(ValidationError)
    def handle_validation(e: ValidationError):
        return jsonify({'success': False, 'message': e.message, 'field': e.field}), 400

    @app.errorhandler(AuthError)
    def handle_auth(e: AuthError):
        # Same wipe for every page: identity, mirror and page state
        session_ctx = g.get('session_ctx')
        if session_ctx is not None:
            session_ctx.clear(reason=e.message)
        session.clear()
        return jsonify({
            'success': False,
            'message': e.message,
            'redirect': url_for('login')
        }), 401

    @app.errorhandler(NotFoundError)
    def handle_not_found(e: NotFoundError):
        return jsonify({'success': False, 'message': e.message}), 404

    @app.errorhandler(RemoteError)
    def handle_remote(e: RemoteError):
        status_code = 503 if e.status_code is None else 502
        return jsonify({'success': False, 'message': e.message, 'status_code': e.status_code}), status_code

    # Identity

    @app.route('/login', methods=['POST'])
    def login():
        """Log in and cache the identity for this browser."""
        data = _form()
        user = g.session_ctx.login(g.api, data.get('username', ''), data.get('password', ''))
        return jsonify({
            'success': True,
            'user': user.model_dump(mode='json'),
            'is_admin': user.is_admin
        }), 200

    @app.route('/logout', methods=['POST'])
    def logout():
        g.session_ctx.logout()
        session.clear()
        return jsonify({'success': True, 'redirect': url_for('login')}), 200

    @app.route('/api/me')
    @login_required
    def me():
        user = g.session_ctx.current_user()
        return jsonify({'user': user.model_dump(mode='json'), 'is_admin': user.is_admin}), 200

    # Voting pages

    @app.route('/api/categories')
    @login_required
    def categories():
        """Categories with the vote total of each, mirrored when statistics are unavailable."""
        items = g.api.list_categories()
        category_ids = [c.id for c in items]
        try:
            entries = g.api.get_statistics()
        except AuthError:
            raise
        except RemoteError as e:
            logger.warning(f"Showing mirrored category totals: {e.message}")
            totals = g.mirror.totals(category_ids)
        else:
            g.mirror.refresh(entries, category_ids)
            totals = category_totals(entries)
        return jsonify([
            {
                **category.model_dump(mode='json'),
                'total': totals.get(category.id, 0),
                'total_label': format_vote_count(totals.get(category.id, 0), config.LOCALE),
            }
            for category in items
        ]), 200

    @app.route('/api/nominations/<int:category_id>')
    @login_required
    def nomination(category_id: int):
        return nomination_response(load_controller(category_id))

    @app.route('/api/nominations/<int:category_id>/select', methods=['POST'])
    @login_required
    def select_nominee(category_id: int):
        nominee_id = _form().get('nominee_id')
        try:
            nominee_id = int(nominee_id)
        except (TypeError, ValueError):
            raise ValidationError("Select a nominee", field="nominee_id") from None
        controller = load_controller(category_id)
        return nomination_response(controller, controller.select(nominee_id))

    @app.route('/api/nominations/<int:category_id>/confirm', methods=['POST'])
    @login_required
    def confirm_vote(category_id: int):
        controller = load_controller(category_id)
        return nomination_response(controller, controller.confirm())

    @app.route('/api/nominations/<int:category_id>/cancel', methods=['POST'])
    @login_required
    def cancel_vote(category_id: int):
        controller = load_controller(category_id)
        return nomination_response(controller, controller.cancel())

    @app.route('/api/nominations/<int:category_id>/revote', methods=['POST'])
    @login_required
    def start_revote(category_id: int):
        controller = load_controller(category_id)
        return nomination_response(controller, controller.start_revote())

    @app.route('/api/nominations/<int:category_id>/dismiss', methods=['POST'])
    @login_required
    def dismiss_error(category_id: int):
        controller = load_controller(category_id)
        controller.dismiss_error()
        return nomination_response(controller)

    @app.route('/api/statistics')
    @login_required
    def statistics():
        """Per-category results grouped by nominee."""
        results = aggregate_statistics(g.api.list_categories(), g.api.get_statistics())
        return jsonify([block.to_dict(config.LOCALE) for block in results]), 200

    # Operations

    @app.route('/health')
    def health():
        """Health check endpoint."""
        try:
            with httpx.Client(base_url=config.API_BASE_URL, timeout=2.0, transport=transport) as client:
                client.get('/api/categories')
            api_healthy = True
        except httpx.HTTPError as e:
            logger.warning(f"Voting service unreachable: {e}")
            api_healthy = False

        storage_healthy = root_store.ping() if isinstance(root_store, RedisStore) else True
        healthy = api_healthy and storage_healthy

        return jsonify({
            'status': 'healthy' if healthy else 'degraded',
            'ui': 'up',
            'voting_api': 'up' if api_healthy else 'down',
            'storage': 'up' if storage_healthy else 'down'
        }), 200 if healthy else 503

    @app.route('/metrics')
    def metrics():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(), content_type=CONTENT_TYPE_LATEST)

    return app


def main():
    app = create_app()
    app.run(host=settings.HOST, port=settings.PORT, debug=settings.DEBUG)


if __name__ == '__main__':
    main()
