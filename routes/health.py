from __future__ import annotations

import os

from fastapi import APIRouter, Depends

from app.container import Services
from deps.services import get_services
from settings import settings

router = APIRouter(tags=["health"])


def _check_store(services: Services) -> tuple[bool, str | None]:
    try:
        services.store.list_interventions(include_resolved=False)
        return True, None
    except Exception as exc:
        return False, type(exc).__name__


def _resolve_env() -> str:
    return (os.getenv("ENVIRONMENT") or os.getenv("ENV") or "").strip()


def _resolve_git_sha() -> str | None:
    return (
        (os.getenv("FLY_IMAGE_REF") or "").strip()
        or (os.getenv("GIT_SHA") or "").strip()
        or None
    )


@router.get("/health")
def health():
    return {
        "ok": True,
        "env": _resolve_env(),
        "processor_mode": settings.PROCESSOR_MODE,
        "store_backend": settings.STORE_BACKEND,
        "git_sha": _resolve_git_sha(),
    }


@router.get("/healthz")
def healthz(services: Services = Depends(get_services)):
    store_ok, store_error = _check_store(services)
    return {
        "ok": True,
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "git_sha": _resolve_git_sha(),
        "store_ok": store_ok,
        "store_error": store_error,
    }
