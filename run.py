#!/usr/bin/env python3
"""
Entry point for the Arena service.

Usage:
    python run.py

Environment Variables:
    FLASK_ENV: development, production or testing (default: development)
    PORT: Port to run on (default: 5000)
    LOG_LEVEL: Root log level (default from config)
"""
import os
import logging


def run_arena():
    """Run the arena API and event stream."""
    from arena.app import create_app

    app = create_app()
    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    logging.getLogger(__name__).info(f"Starting Arena on port {port}...")
    # Each open stream holds a worker thread
    app.run(host='0.0.0.0', port=port, debug=debug, threaded=True, use_reloader=False)


if __name__ == '__main__':
    run_arena()
