"""
Identity Graph API

Identity stitching over the ClickHouse identity_graph edge log:
- POST /identity/events: ingest events, derive identity edges
- POST /identity/alias: link anonymous sessions to a known user
- GET /identity/admin: customer profile rollup for a user
- GET /identity/resolve: canonical user for an anonymous id
- POST|DELETE /identity/gdpr: delete the connected identity closure

Run: python -m identity_graph.main
"""
import json
import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from identity_graph import __version__
from identity_graph.config import Settings
from identity_graph.controllers.auth import ApiKeyAuth
from identity_graph.controllers.identity_controller import IdentityController
from identity_graph.models.responses import ErrorResponse
from identity_graph.repositories.clickhouse import ClickHouseStore
from identity_graph.repositories.profile_cache import ProfileCache
from identity_graph.services.container import IdentityServices

logger = logging.getLogger(__name__)

SERVICE_NAME = "Identity Graph API"


async def json_body(request: Request) -> Any:
    """
    Request body as JSON, read inside the route's dependencies so the API
    key check listed before it runs first. An empty body is None.
    """
    body = await request.body()
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ClickHouseStore] = None,
    profile_cache: Optional[ProfileCache] = None,
) -> FastAPI:
    """
    Build the app with explicitly constructed clients.

    Without CLICKHOUSE_HOST (and no injected store) the app still starts;
    identity endpoints then answer 500 "ClickHouse is not configured".
    """
    settings = settings or Settings.from_env()
    if store is None and settings.clickhouse_configured:
        store = ClickHouseStore.from_settings(settings)
    if profile_cache is None:
        profile_cache = ProfileCache.from_settings(settings)

    services = IdentityServices(store, settings, profile_cache) if store is not None else None
    if services is None:
        logger.warning("[App] ClickHouse is not configured; identity endpoints will return 500")

    controller = IdentityController(settings, services)
    require_api_key = Depends(ApiKeyAuth(settings))

    app = FastAPI(
        title=SERVICE_NAME,
        version=__version__,
        description="Deterministic and probabilistic identity stitching over ClickHouse",
    )
    app.state.settings = settings
    app.state.services = services

    @app.exception_handler(StarletteHTTPException)
    def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(ErrorResponse(error=str(exc.detail)).model_dump(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    def invalid_request(request: Request, exc: RequestValidationError):
        return JSONResponse(ErrorResponse(error="Invalid JSON").model_dump(), status_code=400)

    @app.get("/")
    def root():
        return {
            "service": SERVICE_NAME,
            "version": __version__,
            "status": "running",
            "endpoints": {
                "events": "/identity/events",
                "alias": "/identity/alias",
                "admin": "/identity/admin?user_id=&email=",
                "resolve": "/identity/resolve?anonymous_id=",
                "gdpr": "/identity/gdpr",
                "health": "/health"
            }
        }

    @app.get("/health")
    def health_check():
        if services is None:
            return {"status": "unhealthy", "error": "ClickHouse is not configured (CLICKHOUSE_HOST missing)"}
        try:
            services.store.ping()
            status = {"status": "healthy", "clickhouse": "ok"}
            if services.profile_cache is not None:
                services.profile_cache.ping()
                status["redis"] = "ok"
            return status
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}

    @app.post("/identity/events", dependencies=[require_api_key])
    def ingest_events(request: Request, payload: Any = Depends(json_body)):
        """Single event object or array of event objects (internal or analytics.js shape)"""
        return controller.ingest_events(payload, request.cookies)

    @app.post("/identity/alias", dependencies=[require_api_key])
    def merge_aliases(payload: Any = Depends(json_body)):
        """Body: {userId, email?, phone?, anonymousId?}"""
        return controller.merge_aliases(payload)

    @app.get("/identity/admin", dependencies=[require_api_key])
    def get_identity_profile(
        user_id: Optional[str] = Query(None),
        email: Optional[str] = Query(None),
    ):
        return controller.get_profile(user_id, email)

    @app.get("/identity/resolve", dependencies=[require_api_key])
    def resolve_anonymous_id(anonymous_id: Optional[str] = Query(None)):
        return controller.resolve_anonymous_id(anonymous_id)

    @app.api_route("/identity/gdpr", methods=["POST", "DELETE"], dependencies=[require_api_key])
    def delete_identity(payload: Any = Depends(json_body)):
        """
        Resolve the full connected closure of the given identifiers and
        queue one identity_graph delete mutation for it.
        """
        return controller.delete_identity(payload)

    return app


def run(host: str = "0.0.0.0", port: int = 8000) -> None:
    import uvicorn

    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    uvicorn.run(create_app(settings), host=host, port=port)


if __name__ == "__main__":
    run()
