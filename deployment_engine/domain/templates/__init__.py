"""Descriptor templates for the reverse proxy and process supervisor."""

from .nginx import render_proxy_route, render_validation_harness
from .pm2 import render_ecosystem


__all__ = [
    "render_proxy_route",
    "render_validation_harness",
    "render_ecosystem",
]
