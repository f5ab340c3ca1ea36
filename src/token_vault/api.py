from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import NoReturn

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel

from token_vault import config
from token_vault.errors import ConfigError
from token_vault.keys import KeyFileSink, KeyRing
from token_vault.models import KeyRecord
from token_vault.rotation import KeyRotationService, KeySink
from token_vault.store import VaultStore


class RotateRequest(BaseModel):
    actor: str = "api"


class KeyRecordResponse(BaseModel):
    key_id: str
    version: int
    is_active: bool
    is_primary: bool
    algorithm: str
    created_at: datetime
    activated_at: datetime | None
    rotated_at: datetime | None
    expires_at: datetime | None
    last_used_at: datetime | None
    usage_count: int


class KeyStatusResponse(BaseModel):
    is_valid: bool
    primary_key_id: str | None
    total_keys: int
    loaded_key_ids: list[str]
    keys: list[KeyRecordResponse]


class RotationResponse(BaseModel):
    old_key_id: str
    new_key_id: str
    migrated_count: int
    failed_count: int


class AdminAuth:
    """Bearer check for the admin routes; disabled when no token is configured."""

    def __init__(self, token: str | None) -> None:
        self._token = token or None

    def __call__(self, authorization: str | None = Header(default=None)) -> None:
        if self._token is None:
            return

        scheme, _, presented = (authorization or "").partition(" ")
        if scheme != "Bearer" or not presented:
            _unauthorized("missing bearer token")
        if not secrets.compare_digest(presented.encode(), self._token.encode()):
            _unauthorized("invalid bearer token")


def create_app(
    store: VaultStore | None = None,
    key_ring: KeyRing | None = None,
    key_sink: KeySink | None = None,
    bearer_token: str | None = None,
) -> FastAPI:
    """Build the admin app.

    Without an explicit ``key_sink`` the app persists rotated keys to
    ``TOKEN_VAULT_KEYS_FILE``. With neither, ``/v1/keys/rotate`` answers 400.
    """
    owns_store = store is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_store:
            app.state.store = VaultStore(db_path=config.getenv("DB_PATH", config.DEFAULT_DB_PATH))

        yield

        if owns_store:
            app.state.store.close()

    app = FastAPI(title="TokenVault", version="0.1.0", lifespan=lifespan)
    app.state.key_ring = key_ring if key_ring is not None else KeyRing.from_env()
    app.state.key_sink = key_sink if key_sink is not None else KeyFileSink.from_env()
    if store is not None:
        app.state.store = store

    admin = Depends(AdminAuth(bearer_token if bearer_token is not None else config.getenv("BEARER_TOKEN")))

    def get_rotation(request: Request) -> KeyRotationService:
        rotation = KeyRotationService(
            request.app.state.store,
            request.app.state.key_ring,
            key_sink=request.app.state.key_sink,
        )
        rotation.sync_key_ring()
        return rotation

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/keys/status", response_model=KeyStatusResponse, dependencies=[admin])
    def key_status(
        request: Request,
        rotation: KeyRotationService = Depends(get_rotation),
    ) -> KeyStatusResponse:
        verification = rotation.verify_rotation()
        return KeyStatusResponse(
            is_valid=verification.is_valid,
            primary_key_id=verification.primary_key_id,
            total_keys=verification.total_keys,
            loaded_key_ids=request.app.state.key_ring.key_ids(),
            keys=[_key_to_response(record) for record in request.app.state.store.list_key_records()],
        )

    @app.post("/v1/keys/rotate", response_model=RotationResponse, dependencies=[admin])
    def rotate(
        payload: RotateRequest,
        rotation: KeyRotationService = Depends(get_rotation),
    ) -> RotationResponse:
        try:
            result = rotation.rotate(actor=payload.actor)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return RotationResponse(
            old_key_id=result.old_key_id,
            new_key_id=result.new_key_id,
            migrated_count=result.migrated_count,
            failed_count=result.failed_count,
        )

    return app


def _unauthorized(detail: str) -> NoReturn:
    raise HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def _key_to_response(record: KeyRecord) -> KeyRecordResponse:
    return KeyRecordResponse(
        key_id=record.key_id,
        version=record.version,
        is_active=record.is_active,
        is_primary=record.is_primary,
        algorithm=record.algorithm,
        created_at=record.created_at,
        activated_at=record.activated_at,
        rotated_at=record.rotated_at,
        expires_at=record.expires_at,
        last_used_at=record.last_used_at,
        usage_count=record.usage_count,
    )
