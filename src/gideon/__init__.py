"""Gideon image pipelines: request dispatcher, pipeline orchestrator and schema contracts."""
from .dispatcher import ACTIONS, DispatchError, dispatch
from .orchestrator import (
    analyze_image,
    extract_text,
    fan_out,
    find_products,
    identify_object,
    settle,
    solve_homework,
)

__all__ = [
    "dispatch",
    "DispatchError",
    "ACTIONS",
    "identify_object",
    "solve_homework",
    "analyze_image",
    "extract_text",
    "find_products",
    "settle",
    "fan_out",
]
