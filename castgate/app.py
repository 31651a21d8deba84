# castgate/app.py
import time

# Load .env BEFORE any castgate imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv(override=True)

from fastapi import FastAPI, Request, Path
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, PlainTextResponse

from castgate import monitoring
from castgate import auth as authmod
from castgate import db as dbmod
from castgate.errors import CastError, CastValidationError
from castgate.notifications import (
    InProcessJobQueue, register_jobs, JOB_EXECUTE_CAST_REQUEST, EXECUTE_MAX_ATTEMPTS,
)
from castgate.orchestrator import CastOrchestrator
from castgate.schemas import CastRequestBody
from castgate.validator import validate_cast_array_request, validate_cast_value_request

app = FastAPI(title="castgate: schema-validated LLM casts")

# Initialize DB tables on startup
dbmod.init_db()

# one queue and one orchestrator per process
job_queue = InProcessJobQueue()
orchestrator = CastOrchestrator(job_queue)
register_jobs(job_queue, orchestrator)

AUTH_HEADER = "authorization"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "isError": True})


# ---------------------------------------------------------------------------
# Auth middleware for /api/* paths (wrapped by the metrics middleware below)
# ---------------------------------------------------------------------------
@app.middleware("http")
async def api_key_middleware(request: Request, call_next):
    path = request.url.path
    if not path.startswith("/api/"):
        return await call_next(request)

    api_key = authmod.extract_bearer_token(request.headers.get(AUTH_HEADER))
    if not authmod.is_key_allowed(api_key):
        return _error(401, "Missing or invalid API key")

    return await call_next(request)


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    endpoint = request.url.path
    method = request.method
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": endpoint})
        raise
    finally:
        monitoring.observe_request(start, endpoint, method, status)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{where}: {first.get('msg')}" if where else str(first.get("msg", "Invalid request body"))
    return _error(400, message)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
def _create(body: CastRequestBody, validate) -> str:
    """Validate and persist a pending record. Raises CastError on bad input."""
    params = validate(body.to_params())
    request_id = dbmod.create_request(params)
    monitoring.logger.info(
        "created llm_request",
        extra={"llm_request_id": request_id, "kind": "cast/" + params.request_type},
    )
    return request_id


async def _submit(body: CastRequestBody, validate, now: bool):
    try:
        request_id = _create(body, validate)
    except CastValidationError as e:
        return _error(400, e.message)
    except CastError as e:
        monitoring.logger.error("unexpected-situation. request preparation failed", extra={"error": e.message})
        return _error(500, e.message)

    if now:
        resp = await orchestrator.execute_request(request_id)
        return JSONResponse(status_code=200, content=resp)

    await job_queue.schedule(
        JOB_EXECUTE_CAST_REQUEST, {"llm_request_id": request_id}, max_attempts=EXECUTE_MAX_ATTEMPTS,
    )
    return JSONResponse(status_code=200, content={"id": request_id})


@app.post("/api/cast/value")
async def cast_value(body: CastRequestBody):
    """
    POST /api/cast/value
    Body: {"input": {"prompt", "data"}, "output": {"name", "schema"}, "options": {"invalidateCache"}}
    Returns {"id"}; the result arrives via GET /api/requests/{id} or the completion event.
    """
    return await _submit(body, validate_cast_value_request, now=False)


@app.post("/api/cast/value/now")
async def cast_value_now(body: CastRequestBody):
    return await _submit(body, validate_cast_value_request, now=True)


@app.post("/api/cast/array")
async def cast_array(body: CastRequestBody):
    """
    POST /api/cast/array
    Body: as /api/cast/value, plus input.primaryKey (default "id") and input.data as a list of rows.
    """
    return await _submit(body, validate_cast_array_request, now=False)


@app.post("/api/cast/array/now")
async def cast_array_now(body: CastRequestBody):
    return await _submit(body, validate_cast_array_request, now=True)


@app.get("/api/requests/{request_id}")
def get_request(request_id: str = Path(..., description="LLM request id")):
    rec = dbmod.find_request(request_id)
    if rec is None:
        return _error(404, "Request not found")
    try:
        return JSONResponse(status_code=200, content=dbmod.record_to_dict(rec))
    except ValueError:
        monitoring.logger.exception("Unable to parse stored LLM result", extra={"llm_request_id": request_id})
        return _error(500, "Unable to parse stored LLM result")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
