"""Write a default server YAML for local runs."""

import sys
from pathlib import Path

import yaml

DEFAULT_CONFIG = {
    "listen": {"host": "0.0.0.0", "port": 8080},
    "auction": {
        "window_seconds": 120,
        "min_window_seconds": 30,
        "max_window_seconds": 900,
        "bid_ttl_seconds": 300,
        "auto_resolve_on_expiry": True,
    },
    "storage": {"backend": "in_memory", "max_attempts": 8, "options": {}},
    "notifications": {"backend": "log", "options": {}},
}


def main(target: str | None = None) -> Path:
    path = Path(target) if target else Path.cwd() / "server.local.yaml"
    if path.exists():
        raise FileExistsError(path)
    path.write_text(yaml.safe_dump(DEFAULT_CONFIG, sort_keys=False))
    return path


if __name__ == "__main__":
    written = main(sys.argv[1] if len(sys.argv) > 1 else None)
    print(f"wrote {written}")
