"""
Local admin web server.

Serves the health document and a live session list over Flask, bound to the
loopback interface and run in a daemon thread beside the relay event loop.
"""

import logging
import threading

from flask import Flask, abort, jsonify, request

from .health import build_health_document

logger = logging.getLogger(__name__)

LOOPBACK = ("127.0.0.1", "::1", "localhost")


def create_app(context) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    @app.before_request
    def _loopback_only():
        if request.remote_addr not in LOOPBACK:
            abort(404)

    @app.route('/health')
    @app.route('/health/')
    def health():
        return jsonify(build_health_document(context))

    @app.route('/api/sessions')
    def sessions():
        return jsonify({
            "sessions": context.registry.snapshot(),
            "stats": context.registry.get_stats(),
        })

    @app.route('/api/metrics')
    def metrics():
        return jsonify({
            "resolver": context.resolver.get_metrics(),
            "tls": context.tls.get_metrics(),
            "shaper": context.shaper.get_metrics(),
        })

    @app.route('/api/pools/rotate', methods=['POST'])
    def rotate_pools():
        # Pools belong to the relay loop; run the swap there
        loop = getattr(context, "loop", None)
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(context.registry.rotate_pools)
            return jsonify({"scheduled": True})
        epoch = context.registry.rotate_pools()
        return jsonify({"scheduled": False, "epoch": epoch})

    return app


def start_server(context, host: str = '127.0.0.1', port: int = 8585) -> threading.Thread:
    """Start the admin web server in a background thread.

    Args:
        context: ProxyContext whose state is served
        host: Bind address (default loopback)
        port: Bind port (default 8585)

    Returns:
        The background thread running the server
    """
    app = create_app(context)

    def _run():
        # Suppress Flask request logging
        wlog = logging.getLogger('werkzeug')
        wlog.setLevel(logging.WARNING)

        logger.info(f"Admin endpoint: http://{host}:{port}/health")
        try:
            app.run(host=host, port=port, debug=False, use_reloader=False, threaded=True)
        except OSError as e:
            logger.error(f"Admin web server error: {e}")

    thread = threading.Thread(target=_run, daemon=True, name='veil-admin')
    thread.start()
    return thread
