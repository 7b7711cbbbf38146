"""Expose currently loaded server config for debugging."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..config import ServerConfig
from ..validation.validator import SchemaRegistry

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_config(request: Request) -> ServerConfig:
    return request.app.state.server_config


def _get_schema_registry(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


@router.get("/config")
async def config(
    request: Request,
    config: ServerConfig = Depends(_get_config),
    schemas: SchemaRegistry = Depends(_get_schema_registry),
) -> dict:
    auction = config.auction
    return {
        "auction": {
            "window_seconds": auction.window_seconds,
            "min_window_seconds": auction.min_window_seconds,
            "max_window_seconds": auction.max_window_seconds,
            "bid_ttl_seconds": auction.bid_ttl_seconds,
            "auto_resolve_on_expiry": auction.auto_resolve_on_expiry,
        },
        "storage_backend": config.storage.backend,
        "storage_max_attempts": config.storage.max_attempts,
        "notification_backend": config.notifications.backend,
        "request_schemas": schemas.names(),
        "version": request.app.version,
    }
