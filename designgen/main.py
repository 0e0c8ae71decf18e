import logging
import os
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from designgen.assets import ASSET_DIR, ASSET_STORE
from designgen.errors import NotFound, ProviderError, StoreError, ValidationError
from designgen.models import DesignRequest
from designgen.service import DesignService


if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

app = FastAPI(title="designgen")

allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if ASSET_STORE == "local":
    app.mount("/assets", StaticFiles(directory=ASSET_DIR, check_dir=False), name="assets")


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s status=%s dur_ms=%d",
            rid, request.method, request.url.path, getattr(response, "status_code", "?"), dur_ms,
        )


_service: Optional[DesignService] = None


def get_service() -> DesignService:
    global _service
    if _service is None:
        _service = DesignService()
    return _service


@app.exception_handler(RequestValidationError)
async def _bad_request(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = first.get("msg") or "invalid request"
    return JSONResponse(status_code=400, content={"error": f"{loc}: {msg}" if loc else msg})


@app.exception_handler(ValidationError)
async def _invalid_input(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(ProviderError)
async def _provider_failed(request: Request, exc: ProviderError):
    log.warning("designs.create: provider failure: %s", exc)
    return JSONResponse(status_code=502, content={"error": "LLM provider error", "detail": str(exc)})


@app.exception_handler(NotFound)
async def _not_found(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"error": "Design not found"})


@app.exception_handler(StoreError)
async def _store_failed(request: Request, exc: StoreError):
    log.error("store: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/llm/status")
def llm_status(service: DesignService = Depends(get_service)) -> Dict[str, Any]:
    return service.gateway.status()


@app.post("/designs")
def create_design(req: DesignRequest, service: DesignService = Depends(get_service)):
    result = service.create_design(req)
    return result.model_dump(mode="json")


@app.get("/concepts/{design_id}")
def get_concept(design_id: str, service: DesignService = Depends(get_service)):
    return service.get_status(design_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
