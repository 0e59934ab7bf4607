from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

RendererBackend = Literal["playwright", "reference"]


@dataclass(frozen=True)
class Settings:
    output_root: Path
    renderer_backend: RendererBackend = "playwright"
    html_path: Path | None = None
    headless: bool = True
    use_swiftshader: bool = True
    canvas_width: int = 512
    canvas_height: int = 512
    pool_size: int = 4
    recycle_threshold: int = 50
    max_retries: int = 3
    retry_base_delay_s: float = 1.0
    ready_timeout_s: float = 30.0
    call_timeout_s: float = 30.0
    navigation_timeout_s: float = 30.0
    shutdown_timeout_s: float = 30.0
    acquire_timeout_s: float | None = None
    log_level: str = "INFO"


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float | None) -> float | None:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return float(value)


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


def load_settings() -> Settings:
    env_root = os.environ.get("DATAGEN_OUTPUT_ROOT")
    if env_root:
        root = Path(env_root).expanduser().resolve()
    else:
        root = Path.home() / ".datagen" / "output"

    env_html = os.environ.get("DATAGEN_HTML_PATH")
    html_path = Path(env_html).expanduser().resolve() if env_html else None

    backend = os.environ.get("DATAGEN_RENDERER", "playwright").strip().lower()
    if backend not in ("playwright", "reference"):
        raise ValueError(f"unknown renderer backend {backend!r}")

    return Settings(
        output_root=root,
        renderer_backend=backend,  # type: ignore[arg-type]
        html_path=html_path,
        headless=_env_bool("DATAGEN_HEADLESS", True),
        use_swiftshader=not _env_bool("DATAGEN_GPU", False),
        canvas_width=_env_int("DATAGEN_CANVAS_WIDTH", 512),
        canvas_height=_env_int("DATAGEN_CANVAS_HEIGHT", 512),
        pool_size=_env_int("DATAGEN_POOL_SIZE", 4),
        recycle_threshold=_env_int("DATAGEN_RECYCLE_THRESHOLD", 50),
        max_retries=_env_int("DATAGEN_MAX_RETRIES", 3),
        retry_base_delay_s=_env_float("DATAGEN_RETRY_BASE_DELAY_S", 1.0) or 0.0,
        ready_timeout_s=_env_float("DATAGEN_READY_TIMEOUT_S", 30.0) or 30.0,
        call_timeout_s=_env_float("DATAGEN_CALL_TIMEOUT_S", 30.0) or 30.0,
        navigation_timeout_s=_env_float("DATAGEN_NAVIGATION_TIMEOUT_S", 30.0) or 30.0,
        shutdown_timeout_s=_env_float("DATAGEN_SHUTDOWN_TIMEOUT_S", 30.0) or 30.0,
        acquire_timeout_s=_env_float("DATAGEN_ACQUIRE_TIMEOUT_S", None),
        log_level=os.environ.get("DATAGEN_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
