# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import logging
import os
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file(path: Optional[Union[str, Path]] = None) -> bool:
    """Load a .env file into os.environ without overriding existing variables."""
    loaded = load_dotenv(path) if path is not None else load_dotenv()
    if loaded:
        logger.debug("Loaded environment from %s", path or ".env")
    return loaded


def get_str_env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    return default if value is None else value.strip()


def get_int_env(name: str, default: int = 0) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        logger.warning("Invalid integer value for %s: %r, using default %s", name, value, default)
        return default


def get_float_env(name: str, default: float = 0.0) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError:
        logger.warning("Invalid float value for %s: %r, using default %s", name, value, default)
        return default
