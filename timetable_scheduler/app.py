import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .background import LogNotifier, Notifier, run_flush_loop, run_reminder_loop
from .config import Settings, get_settings
from .database import Database
from .errors import AppError, AuthenticationError, NotFoundError, UnavailableError, ValidationError
from .planner import PlanStrategy, select_strategy
from .schemas import CurrentUser, LoginRequest, PlanRequest, SignupRequest, TaskCreate, TaskUpdate, UserRecord
from .security import create_access_token, get_current_user, make_password_context
from .task_store import TaskStore
from .timeutil import parse_datetime
from .user_store import UserStore

logger = logging.getLogger(__name__)

AUTH_RATE_LIMIT = "10/minute"

# ---- dependencies ----

def get_db(request: Request) -> Iterator[Session]:
    database: Database = request.app.state.database
    if not database.is_open:
        try:
            database.open()
        except Exception:
            logger.exception("Database is not reachable")
            raise UnavailableError("Database not connected. Please check the database settings.")
    db = database.new_session()
    try:
        yield db
    finally:
        db.close()


def get_user_store(request: Request, db: Session = Depends(get_db)) -> UserStore:
    return UserStore(db, request.app.state.pwd_context)


def get_task_store(db: Session = Depends(get_db)) -> TaskStore:
    return TaskStore(db)


def _public_user(user: UserRecord) -> dict:
    return {"id": user.id, "name": user.name, "email": user.email, "role": user.role}


# ---- auth ----

async def signup(request: Request, body: SignupRequest, users: UserStore = Depends(get_user_store)):
    if body.password != body.confirm_password:
        raise ValidationError("Passwords do not match")

    user = await run_in_threadpool(users.create, body.name, body.email, body.password)
    token = create_access_token(user.id, user.role, request.app.state.settings)
    return {"message": "User registered successfully", "token": token, "user": _public_user(user)}


async def login(request: Request, body: LoginRequest, users: UserStore = Depends(get_user_store)):
    user = users.find_by_email(body.email, include_hash=True)
    if user is None:
        raise AuthenticationError("Invalid credentials")
    if not user.is_active:
        raise AuthenticationError("User account is inactive")
    if not await users.verify_password(body.password, user.hashed_password):
        raise AuthenticationError("Invalid credentials")

    token = create_access_token(user.id, user.role, request.app.state.settings)
    return {"message": "Login successful", "token": token, "user": _public_user(user)}


async def get_me(
    current_user: CurrentUser = Depends(get_current_user),
    users: UserStore = Depends(get_user_store),
):
    user = users.find_by_id(current_user.id)
    if user is None:
        raise AuthenticationError("User not found")
    return {"user": _public_user(user)}


async def logout(current_user: CurrentUser = Depends(get_current_user)):
    # Tokens are stateless; the client discards its copy.
    return {"message": "Logout successful"}


def build_auth_router(limiter: Limiter) -> APIRouter:
    """Auth routes with signup and login throttled by ``limiter``, which belongs to one app."""
    router = APIRouter(prefix="/auth", tags=["auth"])
    throttle = limiter.limit(AUTH_RATE_LIMIT)
    router.add_api_route("/signup", throttle(signup), methods=["POST"], status_code=status.HTTP_201_CREATED)
    router.add_api_route("/login", throttle(login), methods=["POST"])
    router.add_api_route("/me", get_me, methods=["GET"])
    router.add_api_route("/logout", logout, methods=["POST"])
    return router


# ---- tasks ----

task_router = APIRouter(prefix="/tasks", tags=["tasks"])


@task_router.post("", status_code=status.HTTP_201_CREATED)
async def create_task(
    body: TaskCreate,
    current_user: CurrentUser = Depends(get_current_user),
    tasks: TaskStore = Depends(get_task_store),
):
    task = tasks.create(body.model_dump(exclude_unset=True), current_user.id)
    return {"message": "Task created successfully", "task": task.to_payload()}


@task_router.get("")
async def list_tasks(
    completed: Optional[bool] = None,
    current_user: CurrentUser = Depends(get_current_user),
    tasks: TaskStore = Depends(get_task_store),
):
    items = tasks.list_by_owner(current_user.id, completed=completed)
    return {"count": len(items), "tasks": [t.to_payload() for t in items]}


@task_router.get("/today")
async def list_today_tasks(
    current_user: CurrentUser = Depends(get_current_user),
    tasks: TaskStore = Depends(get_task_store),
):
    items = tasks.list_today(current_user.id)
    return {"count": len(items), "tasks": [t.to_payload() for t in items]}


@task_router.get("/stats")
async def task_stats(
    current_user: CurrentUser = Depends(get_current_user),
    tasks: TaskStore = Depends(get_task_store),
):
    return {"stats": tasks.stats(current_user.id).model_dump(by_alias=True)}


@task_router.get("/date-range")
async def list_tasks_by_date_range(
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    current_user: CurrentUser = Depends(get_current_user),
    tasks: TaskStore = Depends(get_task_store),
):
    if not startDate or not endDate:
        raise ValidationError("startDate and endDate are required")
    try:
        start = parse_datetime(startDate)
        end = parse_datetime(endDate, end_of_day=True)
    except ValueError:
        raise ValidationError("Dates must be ISO formatted")

    items = tasks.list_by_date_range(current_user.id, start, end)
    return {"count": len(items), "tasks": [t.to_payload() for t in items]}


@task_router.put("/{task_id}")
async def update_task(
    task_id: str,
    body: TaskUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    tasks: TaskStore = Depends(get_task_store),
):
    task = tasks.update(task_id, current_user.id, body.model_dump(exclude_unset=True))
    if task is None:
        raise NotFoundError("Task not found")
    return {"message": "Task updated successfully", "task": task.to_payload()}


@task_router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    tasks: TaskStore = Depends(get_task_store),
):
    # Absent and not-owned ids succeed too, so the response never confirms another user's task.
    deleted = tasks.delete(task_id, current_user.id)
    logger.debug("Delete task id=%s owner=%s removed=%s", task_id, current_user.id, deleted)
    return {"message": "Task deleted successfully"}


# ---- plans ----

ai_router = APIRouter(prefix="/ai", tags=["ai"])


@ai_router.post("/generate-plan")
async def generate_plan(
    request: Request,
    body: PlanRequest,
    current_user: CurrentUser = Depends(get_current_user),
):
    strategy: PlanStrategy = request.app.state.plan_strategy
    plan = await run_in_threadpool(strategy.generate, body)
    logger.info("Plan generated user=%s strategy=%s days=%s", current_user.id, strategy.name, len(plan.schedule))
    return {"message": "Plan generated", "plan": plan.to_payload(), "strategy": strategy.name}


# ---- health ----

health_router = APIRouter(tags=["health"])


@health_router.get("/health")
async def health(request: Request):
    database: Database = request.app.state.database
    connected = database.is_open and await run_in_threadpool(database.ping)
    return {
        "status": "Server is running",
        "database": "connected" if connected else "unavailable",
        "mode": database.dialect,
        "version": __version__,
    }


# ---- error handlers ----

async def app_error_handler(request: Request, exc: AppError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        msg = str(err.get("msg") or "Invalid input").removeprefix("Value error, ")
        errors.append({"field": ".".join(loc), "message": msg})
    message = errors[0]["message"] if errors else "Invalid input"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": message, "errors": errors})


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == status.HTTP_404_NOT_FOUND and message == "Not Found":
        message = "Route not found"
    return JSONResponse(status_code=exc.status_code, content={"message": message}, headers=getattr(exc, "headers", None))


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"message": f"Too many requests: {exc.detail}"},
    )


async def database_error_handler(request: Request, exc: OperationalError):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"message": "Database not available"})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"message": "Internal Server Error"})


# ---- app factory ----

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    database: Database = app.state.database
    try:
        database.open()
    except Exception:
        # Requests will retry and answer 503 until the database comes up.
        logger.exception("Database initialization failed")

    jobs = []
    if database.is_sqlite and settings.flush_interval_seconds > 0:
        jobs.append(asyncio.create_task(run_flush_loop(database, interval_seconds=settings.flush_interval_seconds)))
    if settings.reminder_interval_seconds > 0:
        jobs.append(
            asyncio.create_task(
                run_reminder_loop(database, app.state.notifier, interval_seconds=settings.reminder_interval_seconds)
            )
        )

    try:
        yield
    finally:
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)
        database.close()


def create_app(
    settings: Optional[Settings] = None,
    *,
    plan_strategy: Optional[PlanStrategy] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(title=settings.app_name, version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.database = Database(settings.database_url)
    app.state.pwd_context = make_password_context(settings.bcrypt_rounds)
    app.state.plan_strategy = plan_strategy or select_strategy(settings)
    app.state.notifier = notifier or LogNotifier()

    limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
    app.state.limiter = limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        t0 = time.monotonic()
        response = await call_next(request)
        logger.info(
            "%s %s -> %s (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - t0) * 1000,
        )
        return response

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(OperationalError, database_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    api = APIRouter(prefix="/api")
    api.include_router(build_auth_router(limiter))
    api.include_router(task_router)
    api.include_router(ai_router)
    api.include_router(health_router)
    app.include_router(api)

    return app
