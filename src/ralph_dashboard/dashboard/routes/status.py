"""Version, metrics and package version route handlers."""

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ralph_dashboard.prd.progress import total_stats


async def get_versions(request: Request) -> JSONResponse:
    """GET /api/versions - Known versions with their totals."""
    stores = request.app.state.server.stores
    versions = []
    for version in stores.prd.list_versions():
        prd = stores.prd.get_prd(version.version)
        versions.append(
            {**version.model_dump(mode="json"), "stats": total_stats(prd).model_dump()}
        )
    return JSONResponse({"versions": versions})


async def get_metrics(request: Request) -> JSONResponse:
    """GET /api/metrics[?storyId=] - Agent call summary and recent records."""
    stores = request.app.state.server.stores
    story_id = request.query_params.get("storyId") or None
    return JSONResponse(
        {
            "summary": stores.metrics.summary(),
            "recent": [m.model_dump(mode="json") for m in stores.metrics.list(story_id)],
        }
    )


async def get_version(request: Request) -> JSONResponse:
    """GET /api/version - Return ralph-dashboard version."""
    from ralph_dashboard import __version__

    return JSONResponse({"version": __version__})


routes = [
    Route("/api/versions", get_versions, methods=["GET"]),
    Route("/api/metrics", get_metrics, methods=["GET"]),
    Route("/api/version", get_version, methods=["GET"]),
]
