"""Bootstrap and component initialization."""

import os
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from loguru import logger

from .analyzer import VisionAnalyzer
from .archive import ScreenshotArchive
from .backends import AdbBackend, DisplayBackend, MssBackend, StreamConstraints, SyntheticBackend
from .cache import ScreenshotCache
from .capture import FrameSourceAdapter, SourcePrompt, auto_prompt
from .configs import AppConfig, create_default_config, load_config
from .controller import LifecycleController
from .loggingx import init_logger
from .scheduler import SchedulerConfig

DEFAULT_CONFIG_PATH = "./config/app.yaml"


def build_backend(config: AppConfig) -> DisplayBackend:
    """Create the display backend named in the capture config."""
    name = config.capture.backend
    if name == "mss":
        return MssBackend()
    if name == "adb":
        return AdbBackend(serial=config.capture.adb_serial)
    if name == "synthetic":
        return SyntheticBackend()
    raise ValueError(f"Unknown capture backend: {name}")


def scheduler_config_from(config: AppConfig) -> SchedulerConfig:
    return SchedulerConfig(
        frame_quality=config.capture.frame_quality,
        target_bytes=config.compression.target_bytes,
        min_quality=config.compression.min_quality,
        max_attempts=config.compression.max_attempts,
        start_quality=config.compression.start_quality,
        derive_thumbnails=config.cache.derive_thumbnails,
        realtime_analysis=config.capture.realtime_analysis,
        serialize_persistence=config.capture.serialize_persistence,
    )


def bootstrap_from_config(config_path: Optional[str | Path] = None, **kwargs: Any) -> Dict[str, Any]:
    """Load config from file and wire core components.

    Args:
        config_path: Path to config file, or None to use ``SCREENDOC_CONFIG``
        **kwargs: Passed to :func:`bootstrap_from_config_object`

    Returns:
        Dictionary of initialized components
    """
    return bootstrap_from_config_object(load_app_config(config_path), **kwargs)


def load_app_config(config_path: Optional[str | Path] = None) -> AppConfig:
    """Load the app config from an explicit path, ``SCREENDOC_CONFIG`` or the default.

    An explicit path must exist; otherwise a missing file means defaults.
    """
    if config_path:
        return load_config(config_path)

    config_path_str = os.getenv("SCREENDOC_CONFIG", DEFAULT_CONFIG_PATH)
    if Path(config_path_str).exists():
        return load_config(config_path_str)
    logger.warning(f"Config not found at {config_path_str}, using defaults")
    return create_default_config()


def bootstrap_from_config_object(
    config: AppConfig,
    backend: Optional[DisplayBackend] = None,
    prompt: Optional[SourcePrompt] = None,
    on_error: Optional[Callable[[Exception], None]] = None,
    with_analyzer: bool = True,
    init_logging: bool = True,
) -> Dict[str, Any]:
    """Wire core components based on an AppConfig object.

    Returns:
        Dictionary of initialized components with keys:
        - config: AppConfig
        - backend: DisplayBackend
        - adapter: FrameSourceAdapter
        - cache: ScreenshotCache
        - archive: ScreenshotArchive
        - analyzer: VisionAnalyzer (None if unavailable)
        - controller: LifecycleController
    """
    if init_logging:
        log_file = config.logging.log_file
        init_logger(config.logging.level, Path(log_file) if log_file else None)

    logger.info("Bootstrapping capture components...")

    if backend is None:
        backend = build_backend(config)
    logger.info(f"Display backend: {backend.name}")

    constraints = StreamConstraints(
        ideal_width=config.capture.ideal_width,
        ideal_height=config.capture.ideal_height,
        max_frame_rate=config.capture.max_frame_rate,
    )
    if prompt is None:
        prompt = partial(auto_prompt, monitor=config.capture.monitor)
    adapter = FrameSourceAdapter(backend, prompt=prompt, constraints=constraints)

    cache = ScreenshotCache(
        capacity=config.cache.capacity,
        thumbnail_capacity=config.cache.thumbnail_capacity,
        thumbnail_max_dimension=config.compression.thumbnail_max_dimension,
        thumbnail_target_bytes=config.compression.thumbnail_target_bytes,
        thumbnail_quality=config.compression.thumbnail_quality,
    )

    archive = ScreenshotArchive(config.data_dir, config.data.max_files_per_session)

    # Analysis is optional; capture works without an API key
    analyzer = None
    if with_analyzer:
        try:
            logger.info(f"Initializing vision analyzer ({config.llm.provider})...")
            analyzer = VisionAnalyzer(config.llm)
        except (ValueError, ImportError) as e:
            logger.warning(f"Vision analysis not available: {e}")

    controller = LifecycleController(
        adapter,
        archive.save_screenshot,
        kind=config.capture.source_kind,
        region=config.capture.region_tuple,
        interval_sec=config.capture.interval_sec,
        preview_interval_ms=config.capture.preview_interval_ms,
        preview_quality=config.capture.frame_quality,
        allow_fallback=config.capture.allow_fallback,
        scheduler_config=scheduler_config_from(config),
        cache=cache,
        analyze=analyzer,
        update_screenshot=archive.update_screenshot,
        on_error=on_error,
    )

    components: Dict[str, Any] = {
        "config": config,
        "backend": backend,
        "adapter": adapter,
        "cache": cache,
        "archive": archive,
        "analyzer": analyzer,
        "controller": controller,
    }

    logger.info("Bootstrap complete")
    return components
