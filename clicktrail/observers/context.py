from __future__ import annotations
###############################################################################
# Imports                                                                     #
###############################################################################

import functools
import logging
import sys
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Tuple, TypeVar

# Conditional import for the macOS-only frameworks
try:
    if sys.platform == "darwin":
        import Quartz
        from AppKit import NSWorkspace
        from ApplicationServices import (
            AXUIElementCopyAttributeValue,
            AXUIElementCopyElementAtPosition,
            AXUIElementCreateSystemWide,
        )
    else:
        Quartz = None
        NSWorkspace = None
except ImportError:
    Quartz = None
    NSWorkspace = None

from ..errors import CaptureFailure, ClickTrailError
from ..schemas import AppDescriptor, Rect, UIElementDescriptor, WindowDescriptor

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def platform_lookup(label: str) -> Callable[[F], F]:
    """Re-raise bridge errors (objc.error, KeyError, bad values) as CaptureFailure."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except ClickTrailError:
                raise
            except Exception as exc:
                raise CaptureFailure(f"{label} lookup failed: {type(exc).__name__}: {exc}") from exc

        return wrapper  # type: ignore[return-value]

    return decorator


###############################################################################
# Context provider                                                            #
###############################################################################


class ContextProvider(ABC):
    """UI context around a click.

    Only :meth:`active_app` is mandatory; the other lookups return empty
    results when the platform has nothing to offer.
    """

    @abstractmethod
    def active_app(self) -> AppDescriptor:
        """Raises :class:`CaptureFailure` when the frontmost app is unknown."""

    @abstractmethod
    def element_at(self, point: Tuple[float, float]) -> Optional[UIElementDescriptor]:
        ...

    @abstractmethod
    def windows(self) -> List[WindowDescriptor]:
        ...

    @abstractmethod
    def running_apps(self) -> List[AppDescriptor]:
        ...


class UnavailableContextProvider(ContextProvider):
    """Used where no accessibility backend exists. Every event is dropped."""

    def active_app(self) -> AppDescriptor:
        raise CaptureFailure(f"No context provider for platform {sys.platform}")

    def element_at(self, point):
        return None

    def windows(self):
        return []

    def running_apps(self):
        return []


def _ax_string(element: Any, attribute: str) -> Optional[str]:
    err, value = AXUIElementCopyAttributeValue(element, attribute, None)
    if err != 0 or value is None:
        return None
    return str(value)


class MacOSContextProvider(ContextProvider):
    """NSWorkspace for apps, Accessibility for the element, Quartz for windows."""

    # Internal system windows
    _IGNORED_OWNERS = ("Dock", "WindowServer", "Window Server")

    def __init__(self) -> None:
        if NSWorkspace is None or Quartz is None:
            raise RuntimeError("macOS frameworks are not available")
        self._workspace = NSWorkspace.sharedWorkspace()

    @staticmethod
    def _describe(app) -> AppDescriptor:
        return AppDescriptor(
            name=str(app.localizedName() or "Unknown"),
            bundle_identifier=app.bundleIdentifier(),
            process_id=int(app.processIdentifier()),
        )

    @platform_lookup("active app")
    def active_app(self) -> AppDescriptor:
        app = self._workspace.frontmostApplication()
        if app is None:
            raise CaptureFailure("No frontmost application")
        return self._describe(app)

    @platform_lookup("clicked element")
    def element_at(self, point: Tuple[float, float]) -> Optional[UIElementDescriptor]:
        system_wide = AXUIElementCreateSystemWide()
        err, element = AXUIElementCopyElementAtPosition(system_wide, float(point[0]), float(point[1]), None)
        if err != 0 or element is None:
            logger.debug(f"No accessibility element at {point} (AXError {err})")
            return None
        return UIElementDescriptor(
            role=_ax_string(element, "AXRole"),
            title=_ax_string(element, "AXTitle"),
            label=_ax_string(element, "AXLabel"),
            description=_ax_string(element, "AXDescription"),
            value=_ax_string(element, "AXValue"),
            element_type=_ax_string(element, "AXRoleDescription"),
        )

    @platform_lookup("windows")
    def windows(self) -> List[WindowDescriptor]:
        opts = Quartz.kCGWindowListOptionOnScreenOnly | Quartz.kCGWindowListExcludeDesktopElements
        infos = Quartz.CGWindowListCopyWindowInfo(opts, Quartz.kCGNullWindowID) or []

        bundle_by_pid = {}
        for app in self._workspace.runningApplications():
            bundle_by_pid[int(app.processIdentifier())] = app.bundleIdentifier()

        result: List[WindowDescriptor] = []
        for info in infos:
            owner = info.get("kCGWindowOwnerName", "")
            if owner in self._IGNORED_OWNERS:
                continue
            bounds = info.get("kCGWindowBounds", {})
            result.append(
                WindowDescriptor(
                    title=info.get("kCGWindowName"),
                    owner_name=owner or None,
                    bundle_identifier=bundle_by_pid.get(int(info.get("kCGWindowOwnerPID", -1))),
                    bounds=Rect(
                        x=bounds.get("X", 0),
                        y=bounds.get("Y", 0),
                        width=bounds.get("Width", 0),
                        height=bounds.get("Height", 0),
                    ),
                    layer=int(info.get("kCGWindowLayer", 0)),
                )
            )
        return result

    @platform_lookup("running apps")
    def running_apps(self) -> List[AppDescriptor]:
        # Regular apps only (NSApplicationActivationPolicyRegular == 0)
        return [
            self._describe(app)
            for app in self._workspace.runningApplications()
            if app.activationPolicy() == 0
        ]


def get_context_provider() -> ContextProvider:
    if NSWorkspace is not None and Quartz is not None:
        return MacOSContextProvider()
    logger.warning("Accessibility context is only available on macOS; clicks will not be recorded")
    return UnavailableContextProvider()
