"""API routes.

- GET /api/version       name and version (public)
- GET /api/health        process health (public)
- GET /api/monitoring    monitoring metrics (authenticated)
- OPTIONS /*             CORS preflight
- GET /swagger/          OpenAPI document (dev only)

Global middleware: IP filter (outermost), then CORS.
"""

import logging

from config import Config
from server.auth import AuthConfig, with_auth
from server.health import health
from server.httpd import Handler, Request, Response, Router, api_error, handle_preflight, with_cors
from server.ipfilter import IPRules, with_ip_filter
from server.monitoring import monitoring
from server.version import MODULE, VERSION

logger = logging.getLogger(__name__)


def handle_version() -> Handler:
    def handler(request: Request) -> Response:
        logger.debug("Web request version")
        return Response(body={"name": MODULE, "version": VERSION})
    return handler


def handle_health() -> Handler:
    def handler(request: Request) -> Response:
        return Response(body=health(VERSION))
    return handler


def handle_monitoring() -> Handler:
    def handler(request: Request) -> Response:
        logger.info(
            "Incoming web request for monitoring info (method=%s, path=%s, client_ip=%s, user=%s)",
            request.method, request.path, request.client_address, request.context.get("user", ""),
        )
        try:
            metrics = monitoring(request.header("Host"), VERSION)
        except Exception as e:
            logger.error("Error retrieving monitoring data: %s", e)
            return api_error(500, "internal server error")
        return Response(body=[m.to_dict() for m in metrics])
    return handler


def openapi_document() -> dict:
    """OpenAPI description of the API."""
    error = {"$ref": "#/components/schemas/ApiError"}
    return {
        "openapi": "3.0.3",
        "info": {"title": MODULE, "version": VERSION},
        "paths": {
            "/api/version": {"get": {
                "summary": "Get app version and name",
                "tags": ["info"],
                "responses": {"200": {"description": "Name and version"}},
            }},
            "/api/health": {"get": {
                "summary": "Get app health data",
                "tags": ["info"],
                "responses": {"200": {"description": "Health data"}},
            }},
            "/api/monitoring": {"get": {
                "summary": "Get monitoring data",
                "tags": ["info"],
                "security": [{"APIKeyAuth": []}, {"BearerAuth": []}],
                "responses": {
                    "200": {"description": "Monitoring data successfully retrieved"},
                    "401": {"description": "Not authorized",
                            "content": {"application/json": {"schema": error}}},
                    "403": {"description": "Forbidden",
                            "content": {"application/json": {"schema": error}}},
                    "500": {"description": "Internal server error",
                            "content": {"application/json": {"schema": error}}},
                },
            }},
        },
        "components": {
            "schemas": {"ApiError": {
                "type": "object",
                "properties": {"error": {"type": "string"}},
            }},
            "securitySchemes": {
                "APIKeyAuth": {"type": "apiKey", "in": "header", "name": "X-Api-Key"},
                "BearerAuth": {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"},
            },
        },
    }


def handle_swagger() -> Handler:
    def handler(request: Request) -> Response:
        return Response(body=openapi_document())
    return handler


def init_routes(config: Config) -> Handler:
    """Build the request handler chain for config.

    Raises:
        IPRuleError: If an allow/block list entry cannot be parsed
    """
    webserver = config.webserver
    auth_config = AuthConfig(
        api_key=webserver.api_key,
        jwt_secret=webserver.jwt_secret,
        jwt_id=webserver.jwt_id,
        app_name=MODULE,
    )
    rules = IPRules.from_lists(webserver.allowed_ips, webserver.blocked_ips)

    router = Router()
    router.add("OPTIONS", "/", handle_preflight())

    if config.is_dev_env():
        # Swagger documentation only in development
        router.add("GET", "/swagger/", handle_swagger())

    router.add("GET", "/api/version", handle_version())
    router.add("GET", "/api/health", handle_health())
    router.add("GET", "/api/monitoring", with_auth(handle_monitoring(), auth_config))

    if not auth_config.api_key and not (auth_config.jwt_secret and auth_config.jwt_id):
        logger.warning("No api key or jwt secret configured, authenticated routes reject every request")

    return with_ip_filter(with_cors(router), rules)
