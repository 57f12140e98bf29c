"""Resolve the configured source session factory."""

from __future__ import annotations

import importlib

import structlog

from wabridge.errors import ConfigError
from wabridge.session.base import SessionFactory

logger = structlog.get_logger()


def load_session_factory(path: str) -> SessionFactory:
    """Import ``module:callable`` and return the callable.

    The callable takes no arguments and returns a new SourceSession each time
    it is called; the reconnector calls it once per connection attempt.
    """
    target = (path or "").strip()
    if not target:
        raise ConfigError("Missing required setting: BRIDGE_SESSION_FACTORY")

    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Session factory must look like 'module:callable', got '{target}'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import session module '{module_name}': {e}") from e

    factory = module
    for part in attr.split("."):
        factory = getattr(factory, part, None)
        if factory is None:
            raise ConfigError(f"'{module_name}' has no attribute '{attr}'")

    if not callable(factory):
        raise ConfigError(f"Session factory '{target}' is not callable")

    logger.info("session.factory_loaded", factory=target)
    return factory
