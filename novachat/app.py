from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from novachat.api.error_handling import register_exception_handlers
from novachat.api.routes import router
from novachat.config import Settings
from novachat.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

PROBE_TIMEOUT_SECONDS = 3

_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    from novachat.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.start()
    except Exception as exc:
        # local connections still get revocations without the bus
        logger.error("revocation_bus_start_failed", error=str(exc))
    yield
    try:
        await runtime.close()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))
    else:
        logger.info("runtime_closed")


app = FastAPI(title="NovaChat Sessions", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    # credentialed CORS forbids "*"
    allow_origins=_settings.cors_allow_origins or _DEV_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

_NO_STORE = "no-store, no-cache, must-revalidate, private"


@app.middleware("http")
async def request_headers(request, call_next):
    """Echo or mint X-Request-ID and stamp browser hardening headers."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    headers = response.headers
    headers["X-Request-ID"] = correlation_id
    headers.setdefault("X-Frame-Options", "DENY")
    headers.setdefault("X-Content-Type-Options", "nosniff")
    headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    path = request.url.path
    if path.startswith("/v1/") or path == "/healthz":
        # session payloads must not land in shared caches
        headers.setdefault("Cache-Control", _NO_STORE)
    return response


register_exception_handlers(app)
app.include_router(router)


async def _probe(component: str, check: Callable[[], None]) -> bool:
    """Run a blocking ``check`` off the loop; any exception or timeout is a failure."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component)
        return False
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return False
    return True


def _touch_shared_root(root: Path) -> None:
    if not root.is_dir():
        raise FileNotFoundError(root)
    marker = root / ".health_check"
    marker.write_text(datetime.now(timezone.utc).isoformat())
    marker.unlink(missing_ok=True)


def _status(ok: bool) -> str:
    return "healthy" if ok else "unhealthy"


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from novachat.service.runtime import get_runtime

    runtime = get_runtime()
    results: List[bool] = []
    checks: Dict[str, Dict[str, Any]] = {}

    ping = getattr(runtime.store, "ping", None)
    if ping is None:
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        ok = await _probe("database", ping)
        results.append(ok)
        checks["database"] = {"status": _status(ok)}

    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        ok = await _probe("redis", runtime.cache.verify_connection)
        results.append(ok)
        checks["redis"] = {"status": _status(ok)}

    root = Path(runtime.settings.shared_fs_root)
    ok = await _probe("filesystem", lambda: _touch_shared_root(root))
    results.append(ok)
    checks["filesystem"] = {"status": _status(ok)}

    return {
        "status": _status(all(results)),
        "checks": checks,
        "version": __version__,
        "online_users": len(runtime.directory.online_user_ids()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
