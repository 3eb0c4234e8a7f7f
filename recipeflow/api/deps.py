"""FastAPI dependencies for the RecipeFlow API."""

from typing import Optional

from fastapi import Header, HTTPException, Request

from recipeflow.services.admission import ExtractionJobService


def get_job_service(request: Request) -> ExtractionJobService:
    """Dependency for the job service created at application startup."""
    service = getattr(request.app.state, "job_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Job service is not running")
    return service


def get_owner_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity, set by the authenticating proxy in front of the API."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()
