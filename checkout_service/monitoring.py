from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from .db import ping

router = APIRouter()


@router.get("/health")
def health(request: Request):
    """Readiness probe: 200 when the database answers, 503 otherwise."""
    db_ok = ping(request.app.state.engine)
    return JSONResponse(
        {"ok": db_ok, "components": {"db": {"ok": db_ok}}},
        status_code=200 if db_ok else 503,
    )
