from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi import status
from . import config, errors, logging_config, provider, schemas
import threading
import time
from typing import Optional

# Configure unified logging
logging_config.UnifiedLogger.configure()
logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_API)

app = FastAPI(title="gcepool", version="0.1.0")

_provider: Optional[provider.GceProvider] = None
_provider_lock = threading.Lock()


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Middleware to log all HTTP requests."""
    start_time = time.time()
    response = await call_next(request)
    duration_ms = (time.time() - start_time) * 1000
    logging_config.UnifiedLogger.log_request(
        logger, request.method, request.url.path, response.status_code, duration_ms
    )
    return response


# Provider errors mapped to HTTP status codes, most specific first
_ERROR_STATUS = (
    (errors.ConfigError, status.HTTP_404_NOT_FOUND),
    (errors.VmNotFoundError, status.HTTP_404_NOT_FOUND),
    (errors.SnapshotNotFoundError, status.HTTP_404_NOT_FOUND),
    (errors.SnapshotExistsError, status.HTTP_409_CONFLICT),
    (errors.RevertError, status.HTTP_409_CONFLICT),
    (errors.ConnectionPoolTimeout, status.HTTP_503_SERVICE_UNAVAILABLE),
)


@app.exception_handler(errors.ProviderError)
async def provider_error_handler(request: Request, exc: errors.ProviderError):
    status_code = status.HTTP_502_BAD_GATEWAY
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logging_config.UnifiedLogger.log_error(
            logger, f"{request.method} {request.url.path}", exc
        )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def get_provider() -> provider.GceProvider:
    """Return the process-wide provider, building it from the config file on first use."""
    global _provider
    if _provider is None:
        # sync endpoints run in a threadpool; build exactly one connection pool
        with _provider_lock:
            if _provider is None:
                settings = config.load_settings()
                _provider = provider.GceProvider(settings)
                logger.info("GCE provider ready for pools: %s", ", ".join(_provider.provided_pools))
    return _provider


@app.get("/health", tags=["health"])
def health():
    """Health check: configuration loads and a provider can be built."""
    health_status = {
        "status": "ok",
        "service": "gcepool",
        "checks": {}
    }
    try:
        gce = get_provider()
        health_status["checks"]["config"] = "ok"
        health_status["checks"]["pools"] = len(gce.provided_pools)
        health_status["checks"]["dns"] = (
            "enabled" if gce.provider_config.dns_zone_resource_name else "disabled"
        )
    except errors.ProviderError as e:
        health_status["checks"]["config"] = f"error: {e}"
        health_status["status"] = "degraded"
        return JSONResponse(content=health_status, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return health_status


# VM endpoints
@app.get("/pools/{pool}/vms", response_model=list[schemas.PoolMember])
def list_pool_members(pool: str):
    return get_provider().list_pool_members(pool)


@app.post("/pools/{pool}/vms", response_model=schemas.VirtualMachine, status_code=status.HTTP_201_CREATED)
def create_vm(pool: str, payload: schemas.VMCreate):
    try:
        vm = get_provider().create_vm(pool, payload.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if vm is None:
        raise HTTPException(status_code=502, detail=f"VM {payload.name} was not found after creation")
    return vm


@app.get("/pools/{pool}/vms/{name}", response_model=schemas.VirtualMachine)
def get_vm(pool: str, name: str):
    vm = get_provider().get_vm(pool, name)
    if vm is None:
        raise HTTPException(status_code=404, detail="VM not found")
    return vm


@app.delete("/pools/{pool}/vms/{name}", status_code=status.HTTP_204_NO_CONTENT)
def destroy_vm(pool: str, name: str):
    get_provider().destroy_vm(pool, name)
    return None


@app.get("/pools/{pool}/vms/{name}/ready", response_model=schemas.VMReady)
def vm_ready(pool: str, name: str):
    return {"name": name, "ready": get_provider().is_ready(pool, name)}


@app.put("/pools/{pool}/vms/{name}/labels", status_code=status.HTTP_200_OK)
def set_vm_labels(pool: str, name: str, payload: schemas.LabelsUpdate):
    get_provider().set_vm_labels(pool, name, payload.labels)
    return {"status": "labeled"}


# Disk endpoints
@app.post("/pools/{pool}/vms/{name}/disks", status_code=status.HTTP_201_CREATED)
def create_disk(pool: str, name: str, payload: schemas.DiskCreate):
    get_provider().create_disk(pool, name, payload.size)
    return {"status": "attached"}


# Snapshot endpoints
@app.post("/pools/{pool}/vms/{name}/snapshots", status_code=status.HTTP_201_CREATED)
def create_snapshot(pool: str, name: str, payload: schemas.SnapshotCreate):
    get_provider().create_snapshot(pool, name, payload.name)
    return {"status": "created"}


@app.post("/pools/{pool}/vms/{name}/snapshots/{snapshot}/revert", status_code=status.HTTP_202_ACCEPTED)
def revert_snapshot(pool: str, name: str, snapshot: str):
    get_provider().revert_snapshot(pool, name, snapshot)
    return {"status": "reverted"}


@app.post("/purge", status_code=status.HTTP_202_ACCEPTED)
def purge(payload: schemas.PurgeRequest):
    get_provider().purge_unconfigured_resources(payload.allow_list)
    return {"status": "purged"}
