"""Registry of runnable daemons.

Applications register a factory per route; the CLI and the watcher create
daemons through it::

    from procdaemon.registry import registry

    @registry.register("reports/export")
    def export_daemon(route, settings):
        return Daemon(route, work=export_one, settings=settings)
"""

from __future__ import annotations

import importlib
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from loguru import logger

from procdaemon.config import load_config, settings_for
from procdaemon.core.pidfile import process_name
from procdaemon.models import DaemonSettings

if TYPE_CHECKING:
    from procdaemon.core.daemon import Daemon

DaemonFactory = Callable[..., "Daemon"]


class UnknownDaemonError(KeyError):
    """No daemon registered under the requested route."""

    pass


class DaemonRegistry:
    """Maps daemon identities to factories."""

    def __init__(self):
        self._factories: dict[str, DaemonFactory] = {}

    def register(self, route: str, factory: DaemonFactory | None = None):
        """Register ``factory(route, settings=...)`` under ``route``.

        Without ``factory`` this works as a decorator.
        """
        name = process_name(route)

        def decorator(func: DaemonFactory) -> DaemonFactory:
            if name in self._factories:
                logger.warning(f"Daemon '{name}' registered twice, replacing previous factory")
            self._factories[name] = func
            return func

        if factory is not None:
            return decorator(factory)
        return decorator

    def unregister(self, route: str) -> bool:
        return self._factories.pop(process_name(route), None) is not None

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, route: str) -> bool:
        return process_name(route) in self._factories

    def create(self, route: str, settings: DaemonSettings) -> "Daemon":
        name = process_name(route)
        factory = self._factories.get(name)
        if factory is None:
            raise UnknownDaemonError(name)
        return factory(name, settings=settings)

    def launcher(self, config_path: Path | None = None) -> Callable[[str], int]:
        """Entry point used by watchers: run ``route`` in background mode.

        The configuration is re-read on every launch so that edits to a
        daemon's section apply the next time the watcher starts it.
        """
        def launch(route: str) -> int:
            config = load_config(config_path)
            settings = settings_for(config, route, demonize=True)
            return self.create(route, settings).run()

        return launch


def import_modules(modules: list[str]) -> None:
    """Import application modules so their daemons get registered."""
    for module in modules:
        importlib.import_module(module)
        logger.debug(f"Imported daemon module {module}")


registry = DaemonRegistry()
