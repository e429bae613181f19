from __future__ import annotations

from datetime import timedelta
from typing import NoReturn

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Response, status

from . import __version__
from .api_models import AllocateRequest, ClusterOut, NodeOut, RefreshRequest
from .clusters import ClusterOptions, ClusterService, NodeOptions
from .context import SYSTEM_IDENTITY, ActorContext, new_context
from .db import Cluster
from .errors import ClusterNotFoundError, EngineError, NotOwnerError


def get_actor(authorization: str | None = Header(None)) -> ActorContext:
    """Build the caller's context from the Authorization header.

    The header carries the user's identity (usually an e-mail address).
    HTTP callers never get system privilege.
    """
    identity = (authorization or "").strip()
    if identity.lower().startswith("bearer "):
        identity = identity[7:].strip()
    if not identity:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if identity == SYSTEM_IDENTITY:
        raise HTTPException(status_code=403, detail="Reserved identity")
    return new_context(identity, False)


def _cluster_out(c: Cluster) -> ClusterOut:
    return ClusterOut(
        id=c.id,
        owner=c.owner,
        creator=c.creator,
        timeout=c.timeout,
        nodes=[
            NodeOut(
                container_id=n.container_id,
                name=n.name,
                initial_server_version=n.initial_server_version,
                ipv4_address=n.ipv4_address,
            )
            for n in c.nodes
        ],
    )


def _raise_http(e: Exception) -> NoReturn:
    if isinstance(e, ClusterNotFoundError):
        raise HTTPException(status_code=404, detail=str(e)) from e
    if isinstance(e, NotOwnerError):
        raise HTTPException(status_code=403, detail=str(e)) from e
    if isinstance(e, ValueError):
        raise HTTPException(status_code=400, detail=str(e)) from e
    if isinstance(e, TimeoutError):
        raise HTTPException(status_code=504, detail=str(e)) from e
    if isinstance(e, EngineError):
        raise HTTPException(status_code=502, detail=str(e)) from e
    raise e


def create_app(service: ClusterService) -> FastAPI:
    app = FastAPI(title="Dynamic Cluster Daemon", version=__version__)

    @app.get("/version")
    def version() -> dict[str, str]:
        return {"version": __version__}

    @app.get("/clusters", response_model=list[ClusterOut])
    def list_clusters(actor: ActorContext = Depends(get_actor)):
        return [_cluster_out(c) for c in service.list_all(actor)]

    @app.get("/cluster/{cluster_id}", response_model=ClusterOut)
    def get_cluster(cluster_id: str, actor: ActorContext = Depends(get_actor)):
        try:
            return _cluster_out(service.get(actor, cluster_id))
        except Exception as e:
            _raise_http(e)

    @app.post("/clusters", status_code=status.HTTP_201_CREATED)
    def allocate(req: AllocateRequest, actor: ActorContext = Depends(get_actor)) -> dict[str, str]:
        opts = ClusterOptions(
            nodes=[NodeOptions(server_version=n.server_version, name=n.name) for n in req.nodes],
            ttl=timedelta(seconds=req.ttl_s) if req.ttl_s else None,
        )
        try:
            cluster_id = service.allocate(actor, opts)
        except Exception as e:
            _raise_http(e)
        return {"id": cluster_id}

    @app.put("/cluster/{cluster_id}/refresh", response_model=ClusterOut)
    def refresh(cluster_id: str, req: RefreshRequest, actor: ActorContext = Depends(get_actor)):
        ttl = timedelta(seconds=req.ttl_s) if req.ttl_s else None
        try:
            return _cluster_out(service.refresh(actor, cluster_id, ttl))
        except Exception as e:
            _raise_http(e)

    @app.delete("/cluster/{cluster_id}", status_code=status.HTTP_204_NO_CONTENT)
    def kill(cluster_id: str, actor: ActorContext = Depends(get_actor)) -> Response:
        try:
            service.kill(actor, cluster_id)
        except Exception as e:
            _raise_http(e)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), actor: ActorContext = Depends(get_actor)):
        return service.events(actor, limit=limit)

    return app
