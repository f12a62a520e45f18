#!/usr/bin/env python3
import logging
import sys
import argparse

import uvicorn

from config import DEFAULT_CONFIG_PATH, load_config
from database import init_db, get_session_factory
from reconciler import Reconciler
from routes import create_app
from session_source import HttpSessionSource
from vpn_profile import ProfileRenderer, ProxyCredentials

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='OpenVPN Portal')
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH,
                        help='Path to configuration file')
    parser.add_argument('--host', default='0.0.0.0',
                        help='Address to listen on')
    parser.add_argument('--port', type=int, default=8000,
                        help='Port to listen on')
    return parser.parse_args(argv)

def build_app(config):
    """
    Wire the database, session source, reconciler and profile renderer into an app.

    Args:
        config: Loaded Config

    Returns:
        FastAPI app instance that runs the reconciler while it is serving
    """
    engine = init_db(config.database)
    session_factory = get_session_factory(engine)

    source_config = config.session_source
    source = HttpSessionSource(
        source_config.url,
        timeout=source_config.timeout.total_seconds(),
        clientinfo_url=source_config.clientinfo_url
    )
    reconciler = Reconciler(
        session_factory,
        source,
        interval=source_config.poll_interval.total_seconds()
    )

    credentials = None
    if config.profile_proxy_url:
        credentials = ProxyCredentials(
            config.profile_proxy_url,
            timeout=source_config.timeout.total_seconds()
        )
    renderer = ProfileRenderer(session_factory, config.openvpn, credentials)

    return create_app(
        config,
        session_factory,
        reconciler=reconciler,
        renderer=renderer,
        start_reconciler=True
    )

def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)

    try:
        logger.info(f"Loading configuration from: {args.config}")
        config = load_config(args.config)
        app = build_app(config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(1)

    logger.info(f"Starting ovpn-portal on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port)

if __name__ == "__main__":
    main()
