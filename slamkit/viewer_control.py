"""Settings and run-state control for the map viewer.

The viewer refreshes at the camera frame rate.  Other threads can ask it to
pause, resume or finish.  ``ViewerControl`` holds those flags behind locks so
that any thread can read or change them.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path

import yaml

__all__ = [
    "ViewerSettings",
    "ViewerControl",
    "read_settings",
    "viewer_settings_from_mapping",
]

_DEFAULT_FPS = 30.0
_DEFAULT_WIDTH = 640.0
_DEFAULT_HEIGHT = 480.0


@dataclass(frozen=True)
class ViewerSettings:
    """Display settings read from a camera settings file.

    ``frame_interval_ms`` is the refresh period, ``1000 / fps``.
    """

    fps: float = _DEFAULT_FPS
    frame_interval_ms: float = 1e3 / _DEFAULT_FPS
    image_width: float = _DEFAULT_WIDTH
    image_height: float = _DEFAULT_HEIGHT
    viewpoint_x: float = 0.0
    viewpoint_y: float = 0.0
    viewpoint_z: float = 0.0
    viewpoint_f: float = 0.0


def _number(values, key):
    value = values.get(key, 0.0)
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"setting {key!r} must be a number, got {value!r}") from exc


def viewer_settings_from_mapping(values):
    """Build ``ViewerSettings`` from a mapping of setting names to values.

    Missing entries count as zero.  A frame rate below 1 becomes 30, and an
    image width or height below 1 makes the size 640x480.
    """
    fps = _number(values, "Camera.fps")
    if fps < 1:
        fps = _DEFAULT_FPS

    width = _number(values, "Camera.width")
    height = _number(values, "Camera.height")
    if width < 1 or height < 1:
        width, height = _DEFAULT_WIDTH, _DEFAULT_HEIGHT

    return ViewerSettings(
        fps=fps,
        frame_interval_ms=1e3 / fps,
        image_width=width,
        image_height=height,
        viewpoint_x=_number(values, "Viewer.ViewpointX"),
        viewpoint_y=_number(values, "Viewer.ViewpointY"),
        viewpoint_z=_number(values, "Viewer.ViewpointZ"),
        viewpoint_f=_number(values, "Viewer.ViewpointF"),
    )


class _SettingsLoader(yaml.SafeLoader):
    """Safe loader that also accepts the matrix tags of camera settings files."""


def _construct_tagged_mapping(loader, _suffix, node):
    if isinstance(node, yaml.MappingNode):
        return loader.construct_mapping(node, deep=True)
    if isinstance(node, yaml.SequenceNode):
        return loader.construct_sequence(node, deep=True)
    return loader.construct_scalar(node)


_SettingsLoader.add_multi_constructor("tag:yaml.org,2002:opencv", _construct_tagged_mapping)


def read_settings(path):
    """Read a YAML settings file and return its ``ViewerSettings``.

    Raises ``OSError`` when the file cannot be opened and ``ValueError`` when
    it does not hold a mapping of settings.
    """
    text = Path(path).read_text(encoding="utf-8")
    # Settings files may open with a "%YAML:1.0" line that is not a valid directive.
    lines = [line for line in text.splitlines() if not line.startswith("%")]
    try:
        values = yaml.load("\n".join(lines), Loader=_SettingsLoader)
    except yaml.YAMLError as exc:
        raise ValueError(f"cannot parse settings file {path}: {exc}") from exc
    if values is None:
        values = {}
    if not isinstance(values, dict):
        raise ValueError(f"settings file {path} does not hold a mapping")
    return viewer_settings_from_mapping(values)


class ViewerControl:
    """Thread-safe finish and stop flags of a viewer loop.

    A new control reports itself finished, as a viewer that has not started
    running yet.
    """

    def __init__(self):
        self._finish_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True
        self._stopped = False
        self._stop_requested = False

    def start(self):
        """Mark the viewer loop as running."""
        with self._finish_lock:
            self._finished = False

    def request_finish(self):
        """Ask the viewer loop to end."""
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self):
        """Return True when an end has been requested."""
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self):
        """Mark the viewer loop as ended."""
        with self._finish_lock:
            self._finished = True

    def is_finished(self):
        """Return True when the viewer loop is not running."""
        with self._finish_lock:
            return self._finished

    def request_stop(self):
        """Ask the viewer to pause, unless it already is paused."""
        with self._stop_lock:
            if not self._stopped:
                self._stop_requested = True

    def is_stopped(self):
        """Return True while the viewer is paused."""
        with self._stop_lock:
            return self._stopped

    def stop(self):
        """Pause if a pause was requested; return True when it pauses.

        A requested end takes precedence: no pause happens then.
        """
        with self._stop_lock, self._finish_lock:
            if self._finish_requested:
                return False
            if self._stop_requested:
                self._stopped = True
                self._stop_requested = False
                return True
            return False

    def release(self):
        """Resume after a pause."""
        with self._stop_lock:
            self._stopped = False