import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from sqlalchemy.exc import SQLAlchemyError

from .auth_routes import ensure_admin, router as auth_router
from .config import allowed_origins
from .db import SessionLocal, init_db
from .orders_routes import router as orders_router
from .webhooks import router as webhooks_router

# ---------- FastAPI ----------
app = FastAPI(title="Saddle Serial Ledger API", version="1.0.0")
app.include_router(auth_router)
app.include_router(webhooks_router)
app.include_router(orders_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Serial exports for busy shops get large
app.add_middleware(GZipMiddleware, minimum_size=500)


@app.get("/api/health")
async def health():
    return {"ok": True}


# Ensure database tables exist on startup
@app.on_event("startup")
async def _init_db_tables():
    try:
        await init_db()
    except (SQLAlchemyError, OSError) as e:
        print(f"[DB] Failed to init tables: {e}")


# Log routes on startup to verify ordering and presence
@app.on_event("startup")
async def _log_routes():
    print("[ROUTES] Registered routes in order:")
    for r in app.router.routes:
        path = getattr(r, "path", "?")
        name = getattr(r, "name", "")
        print(f" - {r.__class__.__name__}: {path} ({name})")


# ---------- First admin from env ----------
# No-op once any active admin exists, so the password env can stay set across deploys.
@app.on_event("startup")
async def _ensure_default_admin():
    email = (os.environ.get("ADMIN_DEFAULT_EMAIL") or "").strip()
    password = (os.environ.get("ADMIN_DEFAULT_PASSWORD") or "").strip()
    if not email or not password:
        return
    try:
        async with SessionLocal() as session:
            if await ensure_admin(session, email, password, name=os.environ.get("ADMIN_DEFAULT_NAME")):
                print(f"[AUTH] Default admin ensured: {email}")
    except SQLAlchemyError as e:
        print(f"[AUTH] Default admin bootstrap failed: {e}")
