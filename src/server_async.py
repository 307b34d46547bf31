#!/usr/bin/env python3
"""
Calling Parents relay server (Async)
FastAPI + uvicorn + httpx; phones on the LAN ask the presentation controller
to put "parents of <child>" on screen.

Run: calling-parents [-c config.toml]
"""

import argparse
import os
import platform
import signal
import sys
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI
from starlette.datastructures import MutableHeaders
from starlette.middleware.gzip import GZipMiddleware

import config_store
from activity_log import ActivityLog
from api_proxy import ApiProxy, build_api_router
from auth_gate import PROTECTED_PREFIXES, BearerAuthMiddleware, EntropyError, generate_token
from build_info import BuildInfo
from children_store import ChildrenStore, RosterError, build_children_router
from config_store import ConfigError
from lan_discovery import lan_url, print_qr, split_listen_addr
from message_relay import MessageRelay, build_message_router
from relay_common import log_error, log_info, log_warning, setup_logging
from web_ui import build_static_router

DEFAULT_CONFIG_PATH = "config.toml"
QR_SVG_NAME = "calling-parents-qr.svg"

SECURITY_HEADERS = {
    "Referrer-Policy": "no-referrer",
    "X-Content-Type-Options": "nosniff",
}

# =============================================================================
#                              MIDDLEWARE
# =============================================================================

class SecurityHeadersMiddleware:
    """Adds SECURITY_HEADERS to every HTTP response, including 401s from the auth layer."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for key, value in SECURITY_HEADERS.items():
                    headers[key] = value
            await send(message)

        await self.app(scope, receive, send_with_headers)

# =============================================================================
#                              FASTAPI APP
# =============================================================================

def create_app(cfg, token, build, *, client=None, roster=None, activity=None):
    """
    Wire the relay, proxy, roster, version and web app routes.

    client: outbound httpx.AsyncClient (tests pass one with a MockTransport)
    roster: ChildrenStore, loaded from cfg.children_file when omitted
    activity: optional ActivityLog
    """
    if client is None:
        client = httpx.AsyncClient()
    if roster is None:
        roster = ChildrenStore(cfg.children_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log_info("Server ready")
        yield
        log_info("[Shutdown] Closing controller connections...")
        await client.aclose()
        if activity is not None:
            activity.close()
        log_info("Server stopped")

    app = FastAPI(
        title="Calling Parents",
        version=build.version,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    # add_middleware wraps: last added runs first
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(BearerAuthMiddleware, token=token, protected_prefixes=PROTECTED_PREFIXES)
    app.add_middleware(SecurityHeadersMiddleware)

    relay = MessageRelay(cfg.propresenter_url, cfg.message_name, client, activity=activity)
    proxy = ApiProxy(cfg.propresenter_url, client)

    app.include_router(build_children_router(roster))
    app.include_router(build_message_router(relay, cfg.auto_clear_seconds))
    app.include_router(build_api_router(proxy))

    @app.get("/version")
    def version():
        return build.as_dict()

    # Static routes last
    app.include_router(build_static_router())

    app.state.roster = roster
    app.state.relay = relay
    app.state.build = build
    return app

# =============================================================================
#                              MAIN
# =============================================================================

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="calling-parents",
        description="Calling Parents relay server (FastAPI + uvicorn)",
    )
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_PATH,
                        help=f"Config file, created with defaults if missing (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--background", "-bg", action="store_true",
                        help="Background mode (quiet console, saves QR as SVG image)")
    parser.add_argument("--log-dir", default="logs",
                        help="Directory for the rotating log file (default: logs)")
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    return parser.parse_args(argv)


def _report_config(path, report):
    if report.created:
        log_info(f"[Config] Created default config at {path}")
    if report.merged_keys:
        log_info(f"[Config] Added new settings to {path}: {', '.join(report.merged_keys)} "
                 f"(backup: {report.backup_path})")


def main(argv=None):
    args = parse_args(argv)
    build = BuildInfo.current()

    if args.version:
        print(f"calling-parents {build.info()}")
        return 0

    bg_mode = args.background
    setup_logging(log_dir=args.log_dir, verbose=not bg_mode)
    log_info(f"Calling Parents {build.info()}")

    try:
        cfg, report = config_store.load(args.config)
    except ConfigError as e:
        log_error(f"[Config] {e}")
        return 1
    _report_config(args.config, report)

    try:
        host, port = split_listen_addr(cfg.listen_addr)
    except ValueError as e:
        log_error(f"[Config] {e}")
        return 1

    token = cfg.auth_token
    if not token:
        try:
            token = generate_token()
        except EntropyError as e:
            log_error(f"[Auth] {e}")
            return 1
        log_info("Generated random auth token (set AUTH_TOKEN or auth_token to use a fixed one)")

    try:
        roster = ChildrenStore(cfg.children_file)
    except RosterError as e:
        log_error(f"[Roster] {e}")
        return 1
    log_info(f"Loaded {len(roster.names())} children from {cfg.children_file}")

    activity = None
    if cfg.activity_log:
        try:
            activity = ActivityLog.open(cfg.activity_log)
            log_info(f"Activity log: {cfg.activity_log}")
        except OSError as e:
            log_warning(f"[Activity] Could not open {cfg.activity_log}, running without it: {e}")

    app = create_app(cfg, token, build, roster=roster, activity=activity)

    base_url = lan_url(cfg.listen_addr)
    url = f"{base_url}#token={token}"
    log_info(f"Display controller API: {cfg.propresenter_url}")
    log_info(f"Message template: {cfg.message_name}")
    log_info(f"Listening on {cfg.listen_addr}")

    # Show URL
    if not bg_mode:
        print(f"\n{'='*50}")
        print("Open this URL on the phone:")
        print(url)
        print(f"{'='*50}")
        print_qr(url)
        print()
    else:
        svg_path = os.path.join(args.log_dir, QR_SVG_NAME)
        try:
            print_qr(url, svg_path=svg_path)
            log_info(f"URL: {base_url} (QR code with token saved to {svg_path})")
        except OSError as e:
            log_warning(f"[QR] Could not save {svg_path}: {e}")

    # uvicorn handles SIGINT/SIGTERM itself; schtasks /end sends CTRL_BREAK on Windows
    if platform.system() == "Windows":
        def _shutdown_handler(signum, frame):
            raise SystemExit(0)
        signal.signal(signal.SIGBREAK, _shutdown_handler)

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info" if not bg_mode else "warning",
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
