# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from .loader import get_float_env, get_int_env, get_str_env, load_env_file

__all__ = [
    "get_float_env",
    "get_int_env",
    "get_str_env",
    "load_env_file",
]
