"""
HTTP API - REST endpoints for ImageRepository records and secrets.

Records are addressed Kubernetes-style by namespace and name. Writes go to the
store, publish an event and hand the key to the controller, which does the
actual reconciling.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import asyncpg
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from controller import Controller
from credentials import DOCKER_CONFIG_JSON_TYPE
from db import DatabaseManager
from errors import InvalidImageReference
from events import EventBus, EventType, RepositoryEvent
from models import ImageRepositorySpec, NamespacedName, Secret
from registry import parse_reference
from validation import validate_image_repository_spec, validate_name_format

logger = logging.getLogger(__name__)

# Store errors that mean the database is unreachable rather than broken
STORE_UNAVAILABLE_ERRORS = (OSError, asyncpg.InterfaceError)


class ImageRepositoryApply(BaseModel):
    """Request body for creating or updating an ImageRepository."""

    spec: Dict[str, Any] = Field(
        ...,
        description="ImageRepository spec",
        examples=[{"image": "ghcr.io/org/app", "scanInterval": "5m"}],
    )

    @field_validator("spec")
    @classmethod
    def validate_spec(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        is_valid, error = validate_image_repository_spec(v)
        if not is_valid:
            raise ValueError(error)
        return v


class SecretApply(BaseModel):
    """Request body for storing a secret."""

    type: str = Field(DOCKER_CONFIG_JSON_TYPE, description="Secret type")
    data: Dict[str, str] = Field(
        default_factory=dict, description="Base64-encoded values"
    )


class SecretResponse(BaseModel):
    """A stored secret, without its values."""

    namespace: str
    name: str
    type: str
    keys: List[str]


class TagsResponse(BaseModel):
    canonicalImageName: str
    tags: List[str]


def _key(namespace: str, name: str) -> NamespacedName:
    try:
        validate_name_format(namespace, "namespace")
        validate_name_format(name, "name")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return NamespacedName(namespace, name)


def create_app(
    db: Optional[DatabaseManager],
    event_bus: Optional[EventBus] = None,
    controller: Optional[Controller] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        db: Store for records, secrets and tags.
        event_bus: Bus that change events are published to and streamed from.
        controller: Receives keys to reconcile and keys that were deleted.
    """
    app = FastAPI(
        title="Image Reflector API",
        description="Scans container registries for the tags of image repositories",
        version="0.1.0",
    )

    def require_db() -> DatabaseManager:
        if not db:
            raise HTTPException(status_code=503, detail="Database not available")
        return db

    def publish(event_type: EventType, repo) -> None:
        if event_bus:
            event_bus.publish(RepositoryEvent.from_repository(event_type, repo))

    def enqueue(key: NamespacedName) -> None:
        if controller:
            controller.enqueue(key)

    def store_error(action: str, e: Exception) -> HTTPException:
        if isinstance(e, STORE_UNAVAILABLE_ERRORS):
            logger.error(f"Store unavailable while {action}: {e}")
            return HTTPException(status_code=503, detail="Database not available")
        logger.error(f"Error {action}: {e}", exc_info=True)
        return HTTPException(status_code=500, detail=str(e))

    @app.get("/")
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok", "service": "image-reflector"}

    # ==================== ImageRepository Endpoints ====================

    @app.put("/api/v1/namespaces/{namespace}/imagerepositories/{name}")
    async def apply_image_repository(
        namespace: str, name: str, body: ImageRepositoryApply
    ):
        """Create an ImageRepository or replace its spec."""
        store = require_db()
        key = _key(namespace, name)
        spec = ImageRepositorySpec.from_dict(body.spec)

        try:
            existing = await store.get_image_repository(key)
            repo = await store.apply_image_repository(namespace, name, spec)
        except Exception as e:
            raise store_error("applying image repository", e)

        if existing is None:
            publish(EventType.ADDED, repo)
        elif existing.generation != repo.generation:
            publish(EventType.MODIFIED, repo)
        enqueue(key)
        return repo.to_dict()

    @app.get("/api/v1/imagerepositories")
    async def list_image_repositories(
        namespace: Optional[str] = None, limit: int = 100
    ):
        """List ImageRepositories, optionally in one namespace."""
        store = require_db()
        try:
            repos = await store.list_image_repositories(
                namespace=namespace, limit=limit
            )
        except Exception as e:
            raise store_error("listing image repositories", e)
        return [repo.to_dict() for repo in repos]

    @app.get("/api/v1/namespaces/{namespace}/imagerepositories/{name}")
    async def get_image_repository(namespace: str, name: str):
        """Get an ImageRepository."""
        store = require_db()
        key = _key(namespace, name)
        try:
            repo = await store.get_image_repository(key)
        except Exception as e:
            raise store_error("getting image repository", e)
        if not repo:
            raise HTTPException(status_code=404, detail=f"{key} not found")
        return repo.to_dict()

    @app.delete(
        "/api/v1/namespaces/{namespace}/imagerepositories/{name}", status_code=204
    )
    async def delete_image_repository(namespace: str, name: str):
        """Delete an ImageRepository and drop its pending work."""
        store = require_db()
        key = _key(namespace, name)
        try:
            repo = await store.get_image_repository(key)
            deleted = await store.delete_image_repository(key)
        except Exception as e:
            raise store_error("deleting image repository", e)
        if not deleted:
            raise HTTPException(status_code=404, detail=f"{key} not found")

        if controller:
            controller.forget(key)
        if repo:
            publish(EventType.DELETED, repo)

    @app.get(
        "/api/v1/namespaces/{namespace}/imagerepositories/{name}/tags",
        response_model=TagsResponse,
    )
    async def get_tags(namespace: str, name: str):
        """Tags stored by the last successful scan."""
        store = require_db()
        key = _key(namespace, name)
        try:
            repo = await store.get_image_repository(key)
            if not repo:
                raise HTTPException(status_code=404, detail=f"{key} not found")

            canonical = repo.status.canonical_image_name
            if not canonical:
                try:
                    canonical = parse_reference(repo.spec.image).canonical_name
                except InvalidImageReference as e:
                    raise HTTPException(status_code=422, detail=str(e))
            tags = await store.get_tags(canonical)
        except HTTPException:
            raise
        except Exception as e:
            raise store_error("getting tags", e)
        return TagsResponse(canonicalImageName=canonical, tags=tags)

    @app.post(
        "/api/v1/namespaces/{namespace}/imagerepositories/{name}/reconcile",
        status_code=202,
    )
    async def trigger_reconciliation(namespace: str, name: str):
        """Ask for an immediate reconcile."""
        store = require_db()
        key = _key(namespace, name)
        try:
            repo = await store.get_image_repository(key)
        except Exception as e:
            raise store_error("triggering reconciliation", e)
        if not repo:
            raise HTTPException(status_code=404, detail=f"{key} not found")
        enqueue(key)
        return {"message": "Reconciliation triggered", "key": str(key)}

    # ==================== Secret Endpoints ====================

    @app.put(
        "/api/v1/namespaces/{namespace}/secrets/{name}",
        response_model=SecretResponse,
    )
    async def apply_secret(namespace: str, name: str, body: SecretApply):
        """Store a secret and requeue the records that reference it."""
        store = require_db()
        _key(namespace, name)
        try:
            secret = Secret.from_encoded(namespace, name, body.type, body.data)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

        try:
            await store.put_secret(secret)
            repos = await store.list_image_repositories(namespace=namespace)
        except Exception as e:
            raise store_error("storing secret", e)

        for repo in repos:
            ref = repo.spec.secret_ref
            if ref is not None and ref.name == name:
                enqueue(repo.key)

        return SecretResponse(
            namespace=namespace,
            name=name,
            type=secret.type,
            keys=sorted(secret.data),
        )

    @app.delete("/api/v1/namespaces/{namespace}/secrets/{name}", status_code=204)
    async def delete_secret(namespace: str, name: str):
        """Delete a secret."""
        store = require_db()
        _key(namespace, name)
        try:
            deleted = await store.delete_secret(namespace, name)
        except Exception as e:
            raise store_error("deleting secret", e)
        if not deleted:
            raise HTTPException(
                status_code=404, detail=f"secret {namespace}/{name} not found"
            )

    # ==================== Event Streaming ====================

    @app.get("/api/v1/events")
    async def stream_events(namespace: Optional[str] = None):
        """SSE stream of repository events, optionally for one namespace."""
        if not event_bus:
            raise HTTPException(
                status_code=503,
                detail="Event streaming not available",
            )

        if namespace:
            ns = namespace

            def filter_fn(event: RepositoryEvent) -> bool:
                return event.namespace == ns

        else:
            filter_fn = None

        subscriber_id, subscription = event_bus.subscribe(filter_fn)

        async def event_generator():
            try:
                async for event in subscription:
                    yield event.to_sse()
            except asyncio.CancelledError:
                pass
            finally:
                event_bus.unsubscribe(subscriber_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    return app


class APIServer:
    """Runs the API under uvicorn inside the application's event loop."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 8000):
        self.app = app
        self.host = host
        self.port = port
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        """Serve until stopped."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True
