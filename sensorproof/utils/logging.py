from __future__ import annotations

import json
import logging
import os
from typing import TYPE_CHECKING, Any, Dict

if TYPE_CHECKING:
    from ..types import ModuleResult

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Logger with a single stream handler; level from SENSORPROOF_LOG_LEVEL (INFO)."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(os.getenv("SENSORPROOF_LOG_LEVEL", "INFO").upper())
    return logger


def log_params(logger: logging.Logger, step: str, params: Dict[str, Any]) -> None:
    logger.info("%s params: %s", step, json.dumps(params, sort_keys=True, default=str))


def log_result(logger: logging.Logger, result: "ModuleResult") -> None:
    logger.info(
        "%s score=%.2f confidence=%.2f anomalies=%d in %.1fms",
        result.module_name,
        result.score,
        result.confidence,
        len(result.anomalies),
        result.processing_ms,
    )
