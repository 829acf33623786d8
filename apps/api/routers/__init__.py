"""Routers package."""

from . import (
    health,
    mux,
    transcribe,
    merge,
    assets,
)
