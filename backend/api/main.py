import uuid
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional, List

from fastapi import FastAPI, Depends, HTTPException, status, Request, APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from locu.config import settings
from locu.errors import EntityNotFound, ProviderError, SchemaUnavailable, StorageExhausted
from locu.importer import NormalizedItem
from locu.runtime import Runtime
from api.schemas import (
    BucketCreate, BucketUpdate, BucketReorder, BucketOut,
    TaskCreate, TaskUpdate, TaskMove, TaskMoveBatch, TaskOut, WritebackResponse, EstimateResponse,
    TimerStartRequest, TimerSwitchRequest, TimerStateResponse, ReconcileResponse,
    ImportRuleCreate, ImportRuleUpdate, ConnectionCreate, ConnectionUpdate, ConnectionOut,
    InboxItemIn, InboxImportRequest, ImportResultResponse, ConnectionSyncResponse,
    DrainReportResponse, SyncStatusResponse, SyncNowResponse, SignInRequest,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = Runtime()
    await runtime.open()
    result = await runtime.timer.reconcile()
    logger.info(f"Startup reconcile: {result.outcome.value}")
    app.state.runtime = runtime
    try:
        yield
    finally:
        await runtime.close()


app = FastAPI(title="Locu Local API", lifespan=lifespan)


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Runtime not started")
    return runtime

# --- Middleware & Dependencies ---

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

async def require_token(request: Request):
    tokens = settings.auth_tokens
    if not tokens:
        return
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid authorization header")
    token = auth_header.split(" ", 1)[1]
    if token not in tokens:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

@app.exception_handler(EntityNotFound)
async def _not_found(request: Request, exc: EntityNotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

@app.exception_handler(ValueError)
async def _invalid(request: Request, exc: ValueError):
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})

@app.exception_handler(SchemaUnavailable)
async def _schema_unavailable(request: Request, exc: SchemaUnavailable):
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})

@app.exception_handler(StorageExhausted)
async def _storage_exhausted(request: Request, exc: StorageExhausted):
    return JSONResponse(status_code=status.HTTP_507_INSUFFICIENT_STORAGE, content={"detail": "Local storage is full"})

@app.exception_handler(ProviderError)
async def _provider_error(request: Request, exc: ProviderError):
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc), "code": exc.code})

# --- Health ---

@app.get("/health/live")
async def health_live():
    return {"status": "ok"}

@app.get("/health/ready")
async def health_ready(runtime: Runtime = Depends(get_runtime)):
    try:
        async with runtime.store.transaction() as session:
            await session.execute(text("SELECT 1"))
        revision = await runtime.store.current_revision()
    except SchemaUnavailable:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Local store unavailable")
    return {"status": "ready", "schema_revision": revision}


router = APIRouter(prefix="/v1", dependencies=[Depends(require_token)])

# --- Buckets ---

@router.get("/buckets", response_model=List[BucketOut])
async def list_buckets(runtime: Runtime = Depends(get_runtime)):
    return await runtime.buckets.list()

@router.post("/buckets", response_model=BucketOut, status_code=status.HTTP_201_CREATED)
async def create_bucket(payload: BucketCreate, runtime: Runtime = Depends(get_runtime)):
    return await runtime.buckets.add(payload.name, icon=payload.icon, color=payload.color)

@router.patch("/buckets/{bucket_id}", response_model=BucketOut)
async def update_bucket(bucket_id: str, payload: BucketUpdate, runtime: Runtime = Depends(get_runtime)):
    return await runtime.buckets.update(bucket_id, **payload.model_dump(exclude_none=True))

@router.delete("/buckets/{bucket_id}")
async def delete_bucket(bucket_id: str, runtime: Runtime = Depends(get_runtime)):
    deleted = await runtime.buckets.delete(bucket_id)
    return {"deleted": deleted}

@router.post("/buckets/{bucket_id}/reorder", response_model=List[BucketOut])
async def reorder_bucket(bucket_id: str, payload: BucketReorder, runtime: Runtime = Depends(get_runtime)):
    return await runtime.buckets.reorder(bucket_id, payload.position)

# --- Tasks ---

@router.get("/tasks", response_model=List[TaskOut])
async def list_tasks(bucket_id: Optional[str] = None, section: Optional[str] = None,
                     runtime: Runtime = Depends(get_runtime)):
    return await runtime.tasks.list(bucket_id=bucket_id, section=section)

@router.post("/tasks", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
async def create_task(payload: TaskCreate, runtime: Runtime = Depends(get_runtime)):
    return await runtime.tasks.add(payload.title, payload.bucket_id, payload.section.value)

@router.get("/tasks/{task_id}", response_model=TaskOut)
async def get_task(task_id: str, runtime: Runtime = Depends(get_runtime)):
    return await runtime.tasks.get(task_id)

@router.patch("/tasks/{task_id}", response_model=TaskOut)
async def update_task(task_id: str, payload: TaskUpdate, runtime: Runtime = Depends(get_runtime)):
    fields = payload.model_dump(exclude_unset=True)
    if fields.get("title") is None:
        fields.pop("title", None)
    return await runtime.tasks.update(task_id, **fields)

@router.post("/tasks/{task_id}/complete", response_model=WritebackResponse)
async def complete_task(task_id: str, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.tasks.complete(task_id)
    return WritebackResponse(ok=result.ok, task=TaskOut.model_validate(result.task), error=result.error)

@router.post("/tasks/{task_id}/uncomplete", response_model=WritebackResponse)
async def uncomplete_task(task_id: str, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.tasks.uncomplete(task_id)
    return WritebackResponse(ok=result.ok, task=TaskOut.model_validate(result.task), error=result.error)

@router.post("/tasks/{task_id}/archive", response_model=TaskOut)
async def archive_task(task_id: str, runtime: Runtime = Depends(get_runtime)):
    return await runtime.tasks.archive(task_id)

@router.post("/tasks/{task_id}/move", response_model=List[TaskOut])
async def move_task(task_id: str, payload: TaskMove, runtime: Runtime = Depends(get_runtime)):
    section = payload.section.value if payload.section else None
    if payload.position is not None:
        return await runtime.tasks.reorder(task_id, payload.position, bucket_id=payload.bucket_id, section=section)
    task = None
    if payload.bucket_id is not None:
        task = await runtime.tasks.move_to_bucket(task_id, payload.bucket_id)
    if section is not None:
        task = await runtime.tasks.move_to_section(task_id, section)
    if task is None:
        task = await runtime.tasks.get(task_id)
    return [task]

@router.post("/tasks/move-batch", response_model=List[TaskOut])
async def move_tasks_batch(payload: TaskMoveBatch, runtime: Runtime = Depends(get_runtime)):
    return await runtime.tasks.move_batch(
        payload.task_ids, payload.bucket_id, payload.section.value, payload.insert_position
    )

@router.delete("/tasks/{task_id}")
async def purge_task(task_id: str, runtime: Runtime = Depends(get_runtime)):
    return {"purged": await runtime.tasks.purge(task_id)}

@router.get("/tasks/{task_id}/estimate", response_model=EstimateResponse)
async def task_estimate(task_id: str, runtime: Runtime = Depends(get_runtime)):
    return asdict(await runtime.estimates.suggest(task_id))

# --- Timer ---

@router.get("/timer", response_model=TimerStateResponse)
async def timer_state(runtime: Runtime = Depends(get_runtime)):
    return runtime.timer.state.to_dict()

@router.post("/timer/start", response_model=TimerStateResponse)
async def timer_start(payload: TimerStartRequest, runtime: Runtime = Depends(get_runtime)):
    state = await runtime.timer.start(payload.task_id, payload.mode.value, payload.fixed_minutes)
    return state.to_dict()

@router.post("/timer/switch", response_model=TimerStateResponse)
async def timer_switch(payload: TimerSwitchRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.timer.switch_task(payload.task_id)
    return runtime.timer.state.to_dict()

@router.post("/timer/stop")
async def timer_stop(runtime: Runtime = Depends(get_runtime)):
    session_id = await runtime.timer.stop()
    return {"stopped": session_id is not None, "session_id": session_id}

@router.post("/timer/reconcile", response_model=ReconcileResponse)
async def timer_reconcile(runtime: Runtime = Depends(get_runtime)):
    result = await runtime.timer.reconcile()
    out = asdict(result)
    out["outcome"] = result.outcome.value
    return out

@router.get("/timer/today")
async def timer_today(runtime: Runtime = Depends(get_runtime)):
    today = await runtime.timer.today()
    today["tracked_seconds"] = await runtime.timer.tracked_seconds_today()
    return today

# --- Import rules ---

@router.get("/import-rules")
async def list_import_rules(runtime: Runtime = Depends(get_runtime)):
    return [rule.to_dict() for rule in await runtime.import_rules.list()]

@router.post("/import-rules", status_code=status.HTTP_201_CREATED)
async def create_import_rule(payload: ImportRuleCreate, runtime: Runtime = Depends(get_runtime)):
    rule = await runtime.import_rules.add(
        payload.integration_type,
        payload.source_id,
        payload.target_bucket_id,
        target_section=payload.target_section.value,
        source_name=payload.source_name,
    )
    return rule.to_dict()

@router.patch("/import-rules/{rule_id}")
async def update_import_rule(rule_id: str, payload: ImportRuleUpdate, runtime: Runtime = Depends(get_runtime)):
    rule = await runtime.import_rules.update(
        rule_id,
        target_bucket_id=payload.target_bucket_id,
        target_section=payload.target_section.value if payload.target_section else None,
        is_active=payload.is_active,
    )
    return rule.to_dict()

@router.delete("/import-rules/{rule_id}")
async def delete_import_rule(rule_id: str, runtime: Runtime = Depends(get_runtime)):
    return {"deleted": await runtime.import_rules.delete(rule_id)}

# --- Connections ---

def _connection_out(connection) -> ConnectionOut:
    out = ConnectionOut.model_validate(connection)
    out.has_credential = bool(connection.credential)
    return out

@router.get("/connections", response_model=List[ConnectionOut])
async def list_connections(runtime: Runtime = Depends(get_runtime)):
    return [_connection_out(c) for c in await runtime.connections.list()]

@router.post("/connections", response_model=ConnectionOut, status_code=status.HTTP_201_CREATED)
async def create_connection(payload: ConnectionCreate, runtime: Runtime = Depends(get_runtime)):
    connection = await runtime.connections.add(payload.type, payload.credential, label=payload.label)
    return _connection_out(connection)

@router.patch("/connections/{connection_id}", response_model=ConnectionOut)
async def update_connection(connection_id: str, payload: ConnectionUpdate, runtime: Runtime = Depends(get_runtime)):
    fields = payload.model_dump(exclude_unset=True)
    if fields.get("default_section") is not None:
        fields["default_section"] = payload.default_section.value
    return _connection_out(await runtime.connections.update(connection_id, **fields))

@router.post("/connections/{connection_id}/disconnect", response_model=ConnectionOut)
async def disconnect_connection(connection_id: str, clear_credential: bool = False,
                                runtime: Runtime = Depends(get_runtime)):
    return _connection_out(await runtime.connections.disconnect(connection_id, clear_credential=clear_credential))

@router.delete("/connections/{connection_id}")
async def delete_connection(connection_id: str, runtime: Runtime = Depends(get_runtime)):
    return {"deleted": await runtime.connections.remove(connection_id)}

@router.post("/connections/{connection_id}/sync", response_model=ConnectionSyncResponse)
async def sync_connection(connection_id: str, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.connections.sync(connection_id)
    return ConnectionSyncResponse(
        connection_id=result.connection_id,
        result=ImportResultResponse(
            imported=result.import_result.imported,
            auto_routed=result.import_result.auto_routed,
            skipped=result.import_result.skipped,
        ),
        inbox_items=[InboxItemIn(**asdict(item)) for item in result.inbox_items],
        error=result.error,
    )

@router.post("/inbox/import", response_model=TaskOut)
async def import_inbox_item(payload: InboxImportRequest, runtime: Runtime = Depends(get_runtime)):
    item = NormalizedItem(**payload.item.model_dump())
    task = await runtime.importer.import_item(item, payload.bucket_id, payload.section.value)
    if task is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Already imported: {item.source_id}")
    return task

# --- Sync ---

@router.get("/sync/status", response_model=SyncStatusResponse)
async def sync_status(runtime: Runtime = Depends(get_runtime)):
    return SyncStatusResponse(
        owner_id=runtime.identity.owner_id,
        is_anonymous=runtime.identity.is_anonymous,
        remote_configured=runtime.remote is not None,
        pending=await runtime.outbox.pending_count(),
        dead_letters=len(await runtime.outbox.dead_letters()),
        schema_revision=await runtime.store.current_revision(),
    )

@router.post("/sync/drain", response_model=DrainReportResponse)
async def sync_drain(runtime: Runtime = Depends(get_runtime)):
    return asdict(await runtime.outbox.drain())

@router.post("/sync/now", response_model=SyncNowResponse)
async def sync_now(runtime: Runtime = Depends(get_runtime)):
    result = await runtime.mirror.sync_now()
    reconcile = None
    if result.reconcile is not None:
        reconcile = asdict(result.reconcile)
        reconcile["outcome"] = result.reconcile.outcome.value
    return {"pulled": result.pulled, "drained": asdict(result.drained), "reconcile": reconcile}

@router.get("/sync/dead-letters")
async def list_dead_letters(runtime: Runtime = Depends(get_runtime)):
    return await runtime.outbox.dead_letters()

@router.delete("/sync/dead-letters")
async def clear_dead_letters(runtime: Runtime = Depends(get_runtime)):
    return {"cleared": await runtime.outbox.clear_dead_letters()}

@router.post("/sync/dead-letters/retry")
async def retry_dead_letters(runtime: Runtime = Depends(get_runtime)):
    return {"requeued": await runtime.outbox.retry_dead_letters()}

# --- Account ---

@router.post("/account/sign-in")
async def sign_in(payload: SignInRequest, runtime: Runtime = Depends(get_runtime)):
    adopted = await runtime.mirror.adopt_local_data(payload.account_id)
    return {"owner_id": runtime.identity.owner_id, "adopted": adopted}

@router.post("/account/sign-out")
async def sign_out(runtime: Runtime = Depends(get_runtime)):
    await runtime.mirror.sign_out()
    await runtime.buckets.ensure_default()
    return {"owner_id": runtime.identity.owner_id}


app.include_router(router)
