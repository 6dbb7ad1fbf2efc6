"""
main.py

Entry point for the Care-Plan Consistency & Versioning Engine API.

Wires the in-memory infrastructure into the FastAPI app and starts uvicorn.

Usage
-----
    # Option 1 — run directly (host/port from CAREPLAN_API_HOST / CAREPLAN_API_PORT)
    python main.py

    # Option 2 — run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  POST /api/v1/care-plans/validate             — check an unsaved plan
2.  POST /api/v1/clients/{client_id}/care-plans  — save it (include "assessment_id");
                                                   copy the returned "id"
3.  POST the same body again with that "id"      — overwrite; the previous
                                                   version lands in history
4.  GET  /api/v1/clients/{client_id}/care-plans/{id}/history
5.  POST /api/v1/dashboard                       — rank clients by deadline urgency
"""

import uvicorn

from api import app, get_uow, get_uow_factory
from config import get_settings
from infrastructure import InMemoryUnitOfWork


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your real implementation.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()
app.dependency_overrides[get_uow_factory] = lambda: InMemoryUnitOfWork


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.env == "development",
        log_level=settings.log_level.lower(),
    )
