from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response

from db import get_conn
from services.metrics import render_prometheus
from settings import settings

router = APIRouter(tags=["health"])

MIGRATION_REVISION = "0001_settlement_schema"


def _check_db() -> tuple[bool, str | None]:
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, f"{type(exc).__name__}: {exc}"


def _check_migrations() -> bool:
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT to_regclass('public.alembic_version');")
                if not cur.fetchone()[0]:
                    return False
                cur.execute("SELECT version_num FROM alembic_version LIMIT 1;")
                row = cur.fetchone()
                return bool(row and row[0])
    except Exception:
        return False


def _check_system_accounts() -> bool:
    """Platform and clearing owners must exist before any settlement can post."""
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT count(*) FROM market.users WHERE id IN (%s, %s);",
                    (str(settings.PLATFORM_ACCOUNT_ID), str(settings.CLEARING_ACCOUNT_ID)),
                )
                return cur.fetchone()[0] == 2
    except Exception:
        return False


def _resolve_git_sha() -> str | None:
    return (os.getenv("GIT_SHA") or "").strip() or None


@router.get("/healthz")
def healthz():
    db_ok, db_error = _check_db()
    return {
        "ok": True,
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "git_sha": _resolve_git_sha(),
        "db_ok": db_ok,
        "db_error": db_error,
    }


@router.get("/health")
def health():
    return {
        "ok": True,
        "env": (os.getenv("ENVIRONMENT") or os.getenv("ENV") or "").strip(),
        "gateway_mode": (os.getenv("GATEWAY_MODE") or "mock").strip(),
        "git_sha": _resolve_git_sha(),
    }


@router.get("/readyz")
def readyz():
    db_ok, db_error = _check_db()
    migrations_ok = _check_migrations() if db_ok else False
    accounts_ok = _check_system_accounts() if migrations_ok else False
    return {
        "ready": bool(db_ok and migrations_ok and accounts_ok),
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "db_ok": db_ok,
        "db_error": db_error,
        "migrations_ok": migrations_ok,
        "system_accounts_ok": accounts_ok,
        "migration_revision": MIGRATION_REVISION,
    }


@router.get("/metrics")
def metrics():
    return Response(content=render_prometheus(), media_type="text/plain; version=0.0.4")
