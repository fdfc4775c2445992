from __future__ import annotations
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from logging.handlers import RotatingFileHandler
from typing import Any

import httpx
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.middleware.sessions import SessionMiddleware

from auditbot.auth import current_user, login, logout, require_admin
from auditbot.broker import CredentialBroker
from auditbot.config import Settings, load_task_specs, settings as default_settings
from auditbot.db import make_engine
from auditbot.errors import (
    AuditBotError,
    CredentialError,
    LoginExchangeError,
    NotFound,
    ScheduleParseError,
    UnknownOperationError,
)
from auditbot.executor import JobExecutor
from auditbot.login import LoginFlow, LoginState, PendingLoginStore
from auditbot.notify import Notifier, build_notifier
from auditbot.oidc import OIDCClient
from auditbot.operations import OperationRegistry, default_registry
from auditbot.scheduler import Task, TaskScheduler
from auditbot.schemas import (
    BrokerSettingsOut,
    BrokerSettingsUpdate,
    ExecuteOut,
    RunOut,
    TaskOut,
    TaskSpec,
)
from auditbot.services import RunHistory
from auditbot.utils import ensure_dir, mask_secret

logger = logging.getLogger(__name__)

PURGE_LOGINS_EVERY_SEC = 60


def setup_logging(cfg: Settings) -> None:
    ensure_dir(cfg.LOG_DIR)
    log_path = os.path.join(cfg.LOG_DIR, cfg.APP_LOG_NAME)
    handler = RotatingFileHandler(
        log_path,
        maxBytes=cfg.LOG_MAX_BYTES,
        backupCount=cfg.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    handler.setFormatter(fmt)
    root = logging.getLogger()
    root.setLevel(getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO))
    if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        root.addHandler(handler)
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(fmt)
        root.addHandler(console)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _task_out(scheduler: TaskScheduler, t: Task) -> TaskOut:
    return TaskOut(
        id=t.id,
        name=t.name,
        accounts=list(t.accounts),
        service=t.service,
        command=t.command,
        schedule=t.schedule,
        channel=t.channel,
        next_run_at=scheduler.next_run_at(t),
    )


def _error(status: int, exc: AuditBotError) -> JSONResponse:
    return JSONResponse(status_code=status, content={"detail": exc.message, "code": exc.code})


# -------------------- admin api --------------------

api = APIRouter(prefix="/api", dependencies=[Depends(require_admin)])


@api.get("/tasks", response_model=list[TaskOut])
def list_tasks(request: Request):
    scheduler: TaskScheduler = request.app.state.scheduler
    return [_task_out(scheduler, t) for t in scheduler.list_all()]


@api.post("/tasks", response_model=TaskOut, status_code=201)
def create_task(request: Request, spec: TaskSpec):
    scheduler: TaskScheduler = request.app.state.scheduler
    return _task_out(scheduler, scheduler.create(spec))


@api.get("/tasks/due", response_model=list[TaskOut])
def due_tasks(request: Request, window: int = Query(60, ge=0, description="seconds")):
    scheduler: TaskScheduler = request.app.state.scheduler
    return [_task_out(scheduler, t) for t in scheduler.due_within(timedelta(seconds=window))]


@api.get("/tasks/{task_id}", response_model=TaskOut)
def get_task(request: Request, task_id: str):
    scheduler: TaskScheduler = request.app.state.scheduler
    return _task_out(scheduler, scheduler.get(task_id))


@api.put("/tasks/{task_id}", response_model=TaskOut)
def update_task(request: Request, task_id: str, spec: TaskSpec):
    scheduler: TaskScheduler = request.app.state.scheduler
    return _task_out(scheduler, scheduler.update(task_id, spec))


@api.delete("/tasks/{task_id}", status_code=204)
def delete_task(request: Request, task_id: str):
    request.app.state.scheduler.delete(task_id)
    return Response(status_code=204)


@api.post("/tasks/{task_id}/execute", response_model=ExecuteOut)
def execute_task(request: Request, task_id: str, notify: bool = True):
    outcome = request.app.state.scheduler.execute_now(task_id, notify=notify)
    return ExecuteOut(
        task_id=outcome.task_id,
        status=outcome.status,
        result=outcome.report,
        failed_accounts=outcome.failed_accounts,
    )


@api.get("/runs", response_model=list[RunOut])
def list_runs(request: Request, task_id: str | None = None, limit: int = Query(50, ge=1, le=500)):
    history: RunHistory = request.app.state.history
    return [RunOut.model_validate(r) for r in history.list_runs(task_id=task_id, limit=limit)]


@api.delete("/runs")
def clear_runs(request: Request, task_id: str | None = None):
    history: RunHistory = request.app.state.history
    return {"deleted": history.clear(task_id=task_id)}


@api.get("/operations")
def list_operations(request: Request):
    registry: OperationRegistry = request.app.state.registry
    return [{"service": service, "command": command} for service, command in registry.pairs()]


@api.get("/settings", response_model=BrokerSettingsOut)
def get_settings(request: Request):
    st = request.app.state
    return BrokerSettingsOut(
        provider_url=st.idp.provider_url,
        client_id=st.idp.client_id,
        client_secret=mask_secret(st.idp.client_secret),
        redirect_url=st.idp.redirect_url,
        account_claim=st.login_flow.account_claim,
        role_arn_template=st.broker.role_arn_template,
        slack_token=mask_secret(st.settings.SLACK_TOKEN),
    )


@api.put("/settings", response_model=BrokerSettingsOut)
def update_settings(request: Request, body: BrokerSettingsUpdate):
    st = request.app.state
    cfg: Settings = st.settings
    idp: OIDCClient = st.idp
    idp.configure(
        provider_url=body.provider_url if body.provider_url is not None else idp.provider_url,
        client_id=body.client_id if body.client_id is not None else idp.client_id,
        client_secret=body.client_secret if body.client_secret is not None else idp.client_secret,
        redirect_url=body.redirect_url if body.redirect_url is not None else idp.redirect_url,
    )
    cfg.OIDC_PROVIDER_URL = idp.provider_url
    cfg.OIDC_CLIENT_ID = idp.client_id
    cfg.OIDC_CLIENT_SECRET = idp.client_secret
    cfg.OIDC_REDIRECT_URL = idp.redirect_url
    if body.account_claim is not None:
        st.login_flow.account_claim = cfg.ACCOUNT_CLAIM = body.account_claim
    if body.role_arn_template is not None:
        st.broker.role_arn_template = cfg.ROLE_ARN_TEMPLATE = body.role_arn_template
    if body.slack_token is not None:
        cfg.SLACK_TOKEN = body.slack_token
        old = st.executor.notifier
        st.executor.notifier = build_notifier(body.slack_token, timeout=cfg.HTTP_TIMEOUT_SEC)
        close = getattr(old, "close", None)
        if callable(close):
            close()
    logger.info("broker settings updated by %s", current_user(request) or "anonymous")
    return get_settings(request)


@api.get("/credentials")
def list_credentials(request: Request):
    return {"accounts": request.app.state.broker.accounts()}


@api.delete("/credentials/{account_id}", status_code=204)
def remove_credentials(request: Request, account_id: str):
    if not request.app.state.broker.remove(account_id):
        return JSONResponse(status_code=404, content={"detail": f"No cached login for account {account_id}"})
    return Response(status_code=204)


# -------------------- identity redirect --------------------

auth_routes = APIRouter()


@auth_routes.get("/auth/login")
def start_login(request: Request):
    try:
        url, _ = request.app.state.login_flow.begin()
    except (httpx.HTTPError, ValueError) as e:
        logger.error("identity provider unavailable: %s", e)
        return PlainTextResponse("Identity provider is unavailable, try again later", status_code=502)
    return RedirectResponse(url, status_code=302)


@auth_routes.get("/auth/callback")
def login_callback(
    request: Request,
    state: str = "",
    code: str = "",
    error: str = "",
    error_description: str = "",
):
    if error:
        return PlainTextResponse(f"Login rejected by identity provider: {error_description or error}", status_code=400)
    if not state:
        return PlainTextResponse("Missing state parameter", status_code=400)
    if not code:
        return PlainTextResponse("Missing code parameter", status_code=400)

    result = request.app.state.login_flow.complete(state, code)
    if result.state is not LoginState.VERIFIED:
        status = 502 if isinstance(result.error, LoginExchangeError) else 400
        return PlainTextResponse(f"Login rejected: {result.error.message}", status_code=status)

    login(request, result.subject or "unknown", result.accounts)
    return PlainTextResponse(f"Authentication successful. Cached credentials for accounts: {', '.join(result.accounts)}")


@auth_routes.post("/logout")
def do_logout(request: Request):
    logout(request)
    return Response(status_code=204)


@auth_routes.get("/health")
def health(request: Request):
    scheduler: TaskScheduler = request.app.state.scheduler
    return {"status": "ok", "tasks": len(scheduler.list_all()), "scheduler_running": scheduler.sched.running}


# -------------------- app factory --------------------


def create_app(
    cfg: Settings | None = None,
    *,
    idp: OIDCClient | None = None,
    sts_client: Any = None,
    notifier: Notifier | None = None,
    registry: OperationRegistry | None = None,
    load_tasks: bool = True,
) -> FastAPI:
    cfg = cfg or default_settings

    idp = idp or OIDCClient(
        provider_url=cfg.OIDC_PROVIDER_URL,
        client_id=cfg.OIDC_CLIENT_ID,
        client_secret=cfg.OIDC_CLIENT_SECRET,
        redirect_url=cfg.OIDC_REDIRECT_URL,
        scopes=cfg.oidc_scopes,
        timeout=cfg.HTTP_TIMEOUT_SEC,
    )
    broker = CredentialBroker(
        idp,
        sts_client=sts_client,
        region=cfg.AWS_REGION,
        role_arn_template=cfg.ROLE_ARN_TEMPLATE,
        session_seconds=cfg.ROLE_SESSION_SECONDS,
    )
    login_flow = LoginFlow(
        idp,
        broker,
        PendingLoginStore(ttl=timedelta(seconds=cfg.LOGIN_STATE_TTL_SEC)),
        account_claim=cfg.ACCOUNT_CLAIM,
    )
    history = RunHistory(make_engine(cfg.DB_URL))
    history.create_schema()
    executor = JobExecutor(broker, notifier or build_notifier(cfg.SLACK_TOKEN, timeout=cfg.HTTP_TIMEOUT_SEC), history)
    registry = registry or default_registry(unused_bucket_days=cfg.UNUSED_BUCKET_DAYS)
    scheduler = TaskScheduler(
        executor,
        registry,
        timezone=cfg.TIMEZONE,
        max_workers=cfg.MAX_WORKERS,
    )
    if load_tasks:
        scheduler.load(load_task_specs(cfg.TASKS_FILE))

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        setup_logging(cfg)
        scheduler.add_maintenance_job(login_flow.purge_expired, PURGE_LOGINS_EVERY_SEC, "purge-pending-logins")
        scheduler.start()
        try:
            yield
        finally:
            scheduler.shutdown()
            idp.close()

    root_path = cfg.ROOT_PATH.strip()
    if root_path == "/":
        root_path = ""
    elif root_path:
        root_path = "/" + root_path.strip("/")

    app = FastAPI(title="auditbot", lifespan=lifespan, root_path=root_path)
    app.add_middleware(SessionMiddleware, secret_key=cfg.APP_SECRET, same_site="lax")
    app.state.settings = cfg
    app.state.idp = idp
    app.state.broker = broker
    app.state.login_flow = login_flow
    app.state.history = history
    app.state.executor = executor
    app.state.scheduler = scheduler
    app.state.registry = registry

    @app.exception_handler(NotFound)
    def _not_found(_: Request, exc: NotFound):
        return _error(404, exc)

    @app.exception_handler(ScheduleParseError)
    def _bad_schedule(_: Request, exc: ScheduleParseError):
        return _error(422, exc)

    @app.exception_handler(UnknownOperationError)
    def _unknown_operation(_: Request, exc: UnknownOperationError):
        return _error(422, exc)

    @app.exception_handler(CredentialError)
    def _credential_error(_: Request, exc: CredentialError):
        return _error(409, exc)

    app.include_router(auth_routes)
    app.include_router(api)
    return app


def run() -> None:
    uvicorn.run(create_app(), host=default_settings.HOST, port=default_settings.PORT)


if __name__ == "__main__":
    run()
