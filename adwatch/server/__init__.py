import asyncio

from quart import Quart, jsonify, request
from uvicorn import Server as UvicornServer, Config
from sqlalchemy.exc import DBAPIError
from werkzeug.exceptions import HTTPException
from logging import getLogger
from adwatch.config import Server, Notifications, LOGGER_CONFIG_JSON
from adwatch.database import init_db, close_db
from secrets import token_hex

from . import error, ad_api, wallet_api, admin_api
from .notification_service import notification_worker

logger = getLogger('uvicorn')

instance = Quart(__name__)
instance.config['RESPONSE_TIMEOUT'] = 60
instance.config['REQUEST_TIMEOUT'] = 60
instance.config['MAX_CONTENT_LENGTH'] = 64 * 1024
instance.config['SECRET_KEY'] = Server.SECRET_KEY or token_hex(32)

@instance.after_request
async def add_security_headers(response):
    """Add security headers to all responses"""
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['Referrer-Policy'] = 'no-referrer'

    # Balances and sessions must never be served from a cache
    if request.path.startswith('/api'):
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, private'
        response.headers['Pragma'] = 'no-cache'

    return response

@instance.before_serving
async def before_serve():
    await init_db()

    if Notifications.ENABLED:
        instance.extensions['notification_worker'] = asyncio.create_task(notification_worker())
        logger.info('Notification worker started')
    else:
        logger.info('Notifications disabled, outbox worker not started')

    if not Server.SECRET_KEY:
        logger.warning('SECRET_KEY is not set, using a random per-process key')

    logger.info('Web server is started!')
    logger.info(f'Server running on {Server.BIND_ADDRESS}:{Server.PORT}')

@instance.after_serving
async def after_serve():
    worker = instance.extensions.pop('notification_worker', None)
    if worker is not None:
        worker.cancel()
    await close_db()
    logger.info('Web server is shutting down!')

instance.register_blueprint(ad_api.bp)
instance.register_blueprint(wallet_api.bp)
instance.register_blueprint(admin_api.bp)

@instance.errorhandler(error.ApiError)
async def handle_api_error(e):
    return jsonify(e.to_dict()), e.status_code

@instance.errorhandler(error.HTTPError)
async def handle_http_error(e):
    error_message = error.error_messages.get(e.status_code)
    return jsonify({
        'status': 'error',
        'error': 'http_error',
        'message': e.description or error_message or 'Unknown error'
    }), e.status_code

@instance.errorhandler(HTTPException)
async def handle_routing_error(e):
    return jsonify({
        'status': 'error',
        'error': 'http_error',
        'message': error.error_messages.get(e.code) or e.description
    }), e.code

@instance.errorhandler(DBAPIError)
async def handle_store_error(e):
    logger.error(f'Database unavailable on {request.path}: {e.__class__.__name__}')
    return jsonify({
        'status': 'error',
        'error': 'store_unavailable',
        'message': error.error_messages[503]
    }), 503

@instance.errorhandler(Exception)
async def handle_unexpected_error(e):
    logger.exception(f'Unhandled error on {request.path}: {e}')
    return jsonify({
        'status': 'error',
        'error': 'server_error',
        'message': error.error_messages[500]
    }), 500

server = UvicornServer (
    Config (
        app=instance,
        host=Server.BIND_ADDRESS,
        port=Server.PORT,
        log_config=LOGGER_CONFIG_JSON,
        timeout_keep_alive=30,
        timeout_graceful_shutdown=30
    )
)
