"""Configuration helpers for the auction service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml

_DEFAULT_SERVER_CONFIG = Path(__file__).resolve().parent / "server.yaml"


@dataclass(frozen=True)
class AuctionConfig:
    window_seconds: int
    min_window_seconds: int
    max_window_seconds: int
    bid_ttl_seconds: int
    auto_resolve_on_expiry: bool


@dataclass(frozen=True)
class StorageConfig:
    backend: str
    options: Mapping[str, Any]
    max_attempts: int


@dataclass(frozen=True)
class NotificationConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class ServerConfig:
    listen: Mapping[str, Any]
    auction: AuctionConfig
    storage: StorageConfig
    notifications: NotificationConfig


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(path.read_text()) or {}


def get_server_config_path() -> Path:
    return Path(os.getenv("RIDE_AUCTION_CONFIG_PATH", _DEFAULT_SERVER_CONFIG))


def parse_server_config(data: Mapping[str, Any]) -> ServerConfig:
    auction = data.get("auction", {})
    storage = data.get("storage", {})
    notifications = data.get("notifications", {})
    window_seconds = int(auction.get("window_seconds", 120))
    config = ServerConfig(
        listen=data.get("listen", {}),
        auction=AuctionConfig(
            window_seconds=window_seconds,
            min_window_seconds=int(auction.get("min_window_seconds", 30)),
            max_window_seconds=int(auction.get("max_window_seconds", 900)),
            bid_ttl_seconds=int(auction.get("bid_ttl_seconds", 300)),
            auto_resolve_on_expiry=bool(auction.get("auto_resolve_on_expiry", True)),
        ),
        storage=StorageConfig(
            backend=str(storage.get("backend", "in_memory")),
            options=dict(storage.get("options") or {}),
            max_attempts=int(storage.get("max_attempts", 8)),
        ),
        notifications=NotificationConfig(
            backend=str(notifications.get("backend", "log")),
            options=dict(notifications.get("options") or {}),
        ),
    )
    _check_bounds(config.auction)
    return config


def _check_bounds(auction: AuctionConfig) -> None:
    if auction.bid_ttl_seconds <= 0:
        raise ValueError("auction.bid_ttl_seconds must be positive")
    if not 0 < auction.min_window_seconds <= auction.window_seconds <= auction.max_window_seconds:
        raise ValueError(
            "auction windows must satisfy 0 < min_window_seconds <= window_seconds <= max_window_seconds"
        )


@lru_cache(maxsize=1)
def get_server_config() -> ServerConfig:
    return parse_server_config(_load_yaml(get_server_config_path()))
