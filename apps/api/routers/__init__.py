"""Routers package."""

from . import (
    health,
    jobs,
    credits,
    payments,
    admin,
    device,
)
