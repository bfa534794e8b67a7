"""Monitor registry for dynamic discovery of platform monitors.

Monitors register themselves on import using the ``@register`` decorator.
The registry maps ``platform_name`` strings to ``PlatformMonitor``
subclasses; the scheduler builds one instance per registered platform whose
``is_enabled(settings)`` returns ``True``.

Example — registering a monitor::

    from stream_notify_crawler.monitors.registry import register
    from stream_notify_crawler.monitors.base import PlatformMonitor

    @register
    class TwitchMonitor(PlatformMonitor):
        platform_name = "twitch"
        ...

Example — looking up a monitor::

    autodiscover()
    cls = get_monitor("twitch")
"""

from __future__ import annotations

import importlib
import logging
import pkgutil
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stream_notify_crawler.config.settings import Settings
    from stream_notify_crawler.monitors.base import PlatformMonitor

logger = logging.getLogger(__name__)

_REGISTRY: dict[str, type[PlatformMonitor]] = {}


def register(cls: type[PlatformMonitor]) -> type[PlatformMonitor]:
    """Decorator that registers a ``PlatformMonitor`` subclass.

    Registering a second class under the same ``platform_name`` overwrites
    the first and logs a warning.

    Raises:
        ValueError: If ``cls.platform_name`` is empty.
    """
    platform_name = cls.platform_name
    if not platform_name:
        raise ValueError(f"{cls.__qualname__} does not define platform_name")
    if platform_name in _REGISTRY:
        logger.warning(
            "Platform '%s' is already registered (was %s). Overwriting with %s.",
            platform_name,
            _REGISTRY[platform_name].__qualname__,
            cls.__qualname__,
        )
    _REGISTRY[platform_name] = cls
    logger.debug("Registered monitor: platform=%s class=%s", platform_name, cls.__qualname__)
    return cls


def get_monitor(platform_name: str) -> type[PlatformMonitor]:
    """Return the monitor class registered under ``platform_name``.

    Raises:
        KeyError: If no monitor is registered for ``platform_name``.
    """
    try:
        return _REGISTRY[platform_name]
    except KeyError:
        raise KeyError(
            f"No monitor registered for platform '{platform_name}'. "
            f"Registered platforms: {sorted(_REGISTRY)}."
        ) from None


def list_monitors() -> list[str]:
    return sorted(_REGISTRY)


def enabled_monitors(settings: Settings) -> list[type[PlatformMonitor]]:
    """Registered monitor classes whose credentials are configured."""
    return [_REGISTRY[name] for name in sorted(_REGISTRY) if _REGISTRY[name].is_enabled(settings)]


def autodiscover() -> None:
    """Import every ``monitors.<platform>.monitor`` module.

    Idempotent.  A module that fails to import is logged and skipped so the
    remaining platforms still load.
    """
    import stream_notify_crawler.monitors as monitors_pkg  # noqa: PLC0415

    prefix = monitors_pkg.__name__ + "."
    for _finder, module_name, _is_pkg in pkgutil.walk_packages(
        path=monitors_pkg.__path__, prefix=prefix
    ):
        if module_name.endswith(".monitor"):
            try:
                importlib.import_module(module_name)
                logger.debug("Autodiscovered monitor module: %s", module_name)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Failed to import monitor module '%s': %s",
                    module_name,
                    exc,
                    exc_info=True,
                )
