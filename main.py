#!/usr/bin/env python3
"""
Storefront Gatekeeper - Python/Sanic Implementation
Main entry point for the application
"""

import logging
import sys
from typing import Optional

from sanic import Sanic
from sanic_cors import CORS

from config import Config
from admin_auth import AdminAuthHandler
from gate_handler import GateHandler
from gate_server import GateServer
from health_monitor import HealthMonitor
from request_parser import RequestParser
from response_builder import ResponseBuilder
from security_console import SecurityConsole
from server_stats import StatsCollector

logger = logging.getLogger(__name__)

CLI_MODES = {
    "middleware": ("middleware", None),
    "forward-auth": ("forward-auth", None),
    "debug": (None, True),
    "production": (None, False),
    "middleware-debug": ("middleware", True),
    "forward-auth-debug": ("forward-auth", True),
}


def print_startup_info(config: Config):
    """Print startup information"""
    print("🛡️  Storefront Gatekeeper (Python)")
    print("=" * 40)
    print(f"✅ Mode: {config.mode}")
    print(f"✅ Port: {config.port}")
    print(f"✅ Debug: {config.debug}")
    print(f"✅ Environment: {config.environment}")
    print(f"✅ Store: {config.database_path or 'memory'}")
    print(f"✅ Auth Timeout: {config.auth_timeout}")
    print()
    print("📊 Available Endpoints:")
    print(f"   http://localhost:{config.port}/auth        - Forward-auth endpoint")
    print(f"   http://localhost:{config.port}/auth/admin  - Admin session login/validate/logout")
    print(f"   http://localhost:{config.port}/security/*  - Security console (admin)")
    print(f"   http://localhost:{config.port}/health      - Health check")
    print(f"   http://localhost:{config.port}/status      - Gate status")
    print(f"   http://localhost:{config.port}/stats       - Server statistics")
    print()


def print_nginx_config(port: str):
    """Print nginx auth_request configuration for forward-auth mode"""
    print("🔧 Nginx Configuration:")
    print("=" * 23)
    print("location = /auth {")
    print("    internal;")
    print(f"    proxy_pass http://127.0.0.1:{port}/auth;")
    print("    proxy_pass_request_body off;")
    print('    proxy_set_header Content-Length "";')
    print("    proxy_set_header X-Original-URI $request_uri;")
    print("    proxy_set_header X-Original-Method $request_method;")
    print("    proxy_set_header X-Original-Remote-Addr $remote_addr;")
    print("    proxy_set_header X-Original-User-Agent $http_user_agent;")
    print("    proxy_set_header X-Original-Cookie $http_cookie;")
    print("}")
    print()
    print("location / {")
    print("    auth_request /auth;")
    print("    auth_request_set $user_id $upstream_http_x_user_id;")
    print("    auth_request_set $user_role $upstream_http_x_user_role;")
    print("    proxy_set_header X-User-ID $user_id;")
    print("    proxy_set_header X-User-Role $user_role;")
    print("    error_page 401 403 429 = @gate_redirect;")
    print("    proxy_pass http://storefront-backend;")
    print("}")
    print()


def install(app: Sanic, server: GateServer):
    """Build the request handling components and store them in app context"""
    parser = RequestParser()
    responder = ResponseBuilder()
    stats = StatsCollector(server.stats)
    gate_handler = GateHandler(server, parser, responder, stats, server.config.mode)

    app.ctx.server = server
    app.ctx.parser = parser
    app.ctx.responder = responder
    app.ctx.stats = stats
    app.ctx.gate_handler = gate_handler
    app.ctx.health_monitor = HealthMonitor(server, responder, stats)
    app.ctx.admin_auth = AdminAuthHandler(server, parser, responder)
    app.ctx.security_console = SecurityConsole(server, gate_handler, responder)


def create_app(config: Optional[Config] = None, server: Optional[GateServer] = None,
               name: str = "storefront-gatekeeper") -> Sanic:
    """Create and configure the Sanic application"""
    config = config or (server.config if server is not None else Config.from_env())

    app = Sanic(name)
    if server is not None:
        install(app, server)

    @app.before_server_start
    async def setup_server(app, loop):
        """Open the store and start background workers"""
        if not hasattr(app.ctx, "server"):
            install(app, await GateServer.create(config))
        await app.ctx.server.start()

    @app.after_server_stop
    async def shutdown_server(app, loop):
        await app.ctx.server.stop()

    if config.mode == "middleware":
        app.register_middleware(gate_request, "request")
        app.register_middleware(gate_response, "response")

    app.add_route(handle_auth, "/auth", methods=["GET", "POST", "OPTIONS"])
    app.add_route(handle_admin_auth, "/auth/admin", methods=["POST"])
    app.add_route(handle_health, "/health", methods=["GET"])
    app.add_route(handle_status, "/status", methods=["GET"])
    app.add_route(handle_stats, "/stats", methods=["GET"])

    app.add_route(handle_list_events, "/security/events", methods=["GET"])
    app.add_route(handle_list_whitelist, "/security/whitelist", methods=["GET"])
    app.add_route(handle_add_whitelist_rule, "/security/whitelist", methods=["POST"])
    app.add_route(handle_remove_whitelist_rule, "/security/whitelist/<rule_id>", methods=["DELETE"])
    app.add_route(handle_list_alerts, "/security/alerts", methods=["GET"])
    app.add_route(handle_resolve_alert, "/security/alerts/<alert_id>/resolve", methods=["POST"])
    app.add_route(handle_list_sessions, "/security/sessions/<user_id>", methods=["GET"])
    app.add_route(handle_terminate_sessions, "/security/sessions/<user_id>", methods=["DELETE"])

    return app


# Middleware and route handlers that use app context
async def gate_request(request):
    return await request.app.ctx.gate_handler.handle_request(request)

async def gate_response(request, response):
    await request.app.ctx.gate_handler.handle_response(request, response)

async def handle_auth(request):
    return await request.app.ctx.gate_handler.handle_auth(request)

async def handle_admin_auth(request):
    return await request.app.ctx.admin_auth.handle(request)

async def handle_health(request):
    return await request.app.ctx.health_monitor.handle_health(request)

async def handle_status(request):
    return await request.app.ctx.health_monitor.handle_status(request)

async def handle_stats(request):
    return await request.app.ctx.health_monitor.handle_stats(request)

async def handle_list_events(request):
    return await request.app.ctx.security_console.list_events(request)

async def handle_list_whitelist(request):
    return await request.app.ctx.security_console.list_whitelist(request)

async def handle_add_whitelist_rule(request):
    return await request.app.ctx.security_console.add_whitelist_rule(request)

async def handle_remove_whitelist_rule(request, rule_id):
    return await request.app.ctx.security_console.remove_whitelist_rule(request, rule_id)

async def handle_list_alerts(request):
    return await request.app.ctx.security_console.list_alerts(request)

async def handle_resolve_alert(request, alert_id):
    return await request.app.ctx.security_console.resolve_alert(request, alert_id)

async def handle_list_sessions(request, user_id):
    return await request.app.ctx.security_console.list_sessions(request, user_id)

async def handle_terminate_sessions(request, user_id):
    return await request.app.ctx.security_console.terminate_sessions(request, user_id)


def main():
    """Main entry point"""
    config = Config.from_env()

    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if arg not in CLI_MODES:
            print(f"Unknown argument: {arg}")
            print(f"Available options: {', '.join(CLI_MODES)}")
            sys.exit(1)
        mode, debug = CLI_MODES[arg]
        if mode is not None:
            config.mode = mode
        if debug is not None:
            config.debug = debug
        print(f"🔧 {arg} selected")

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print_startup_info(config)
    if config.mode == "forward-auth":
        print_nginx_config(config.port)

    print(f"🚀 Server starting on port {config.port}")

    app = create_app(config)

    # Setup CORS
    CORS(app,
         origins="*" if config.mode == "forward-auth" else ["http://localhost:*"],
         methods=["GET", "POST", "DELETE", "OPTIONS", "HEAD"],
         headers=["Content-Type", "Authorization", "X-Requested-With"])

    try:
        app.run(
            host=config.host,
            port=int(config.port),
            debug=config.debug,
            access_log=config.debug,
            single_process=True
        )
    except KeyboardInterrupt:
        print("\n🛑 Server stopped")


if __name__ == "__main__":
    main()
