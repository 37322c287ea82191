"""Screen Capture Provider.

Grabs a monitor or the focused window with MSS, encodes the frame as PNG
with Pillow, and attaches the active window's title and X11 id obtained
from xdotool.

Capture kinds:
    screen: monitor number ``source_id`` (1 = primary, as numbered by MSS)
    window: the bounds of the currently focused window

Dependencies:
    - mss: Multi-platform screenshot library
    - PIL (Pillow): Image conversion and PNG encoding
    - xdotool: X11 window information (optional, window fields are blank without it)

Example:
    >>> from recorder.capture import ScreenCapture
    >>> capture = ScreenCapture()
    >>> result = capture.capture_source(1, "screen")
    >>> if result:
    ...     print(result.window_name, len(result.image))
"""

import io
import logging
import subprocess
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import mss
from PIL import Image

from .timeline import utc_now_iso

logger = logging.getLogger(__name__)

CAPTURE_KINDS = ("screen", "window")


class ScreenCaptureError(Exception):
    """Raised when a frame cannot be grabbed or encoded.

    Typical causes are a missing display server, an unknown monitor number,
    or an image conversion failure.
    """
    pass


@dataclass
class CaptureResult:
    window_id: str
    window_name: str
    timestamp: str
    image: bytes


class ScreenCapture:
    """Captures PNG frames together with the active window context.

    Example:
        >>> capture = ScreenCapture()
        >>> window_id, title = capture.get_active_window()
        >>> result = capture.capture_source(1, "window")
    """

    def __init__(self, command_timeout: float = 5.0):
        self.command_timeout = command_timeout

    def capture_source(self, source_id: int, kind: str = "screen",
                       window: Optional[Tuple[Optional[str], Optional[str]]] = None) -> Optional[CaptureResult]:
        """Capture one frame.

        Args:
            source_id: Monitor number for kind "screen"
            kind: "screen" or "window"
            window: (window_id, window_title) already read by the caller.
                xdotool is queried when omitted.

        Returns:
            CaptureResult, or None if the capture failed for any reason.
        """
        try:
            window_id, window_name = window if window is not None else self.get_active_window()
            region = None
            if kind == "window":
                region = self._get_window_geometry(window_id)
                if region is None:
                    logger.debug("Focused window geometry unavailable, capturing monitor")
            elif kind not in CAPTURE_KINDS:
                raise ScreenCaptureError(f"Unknown capture kind: {kind}")

            timestamp = utc_now_iso()
            image = self.grab_png(source_id, region)
        except ScreenCaptureError as e:
            logger.error(f"Capture of {kind} {source_id} failed: {e}")
            return None

        return CaptureResult(
            window_id=window_id or "",
            window_name=window_name or "",
            timestamp=timestamp,
            image=image,
        )

    def grab_png(self, monitor_index: int = 1, region: Optional[Dict] = None) -> bytes:
        """Grab a monitor or region and return PNG bytes.

        Raises:
            ScreenCaptureError: If the display cannot be read or encoded
        """
        try:
            with mss.mss() as sct:
                if region:
                    monitor = {
                        'left': region['left'],
                        'top': region['top'],
                        'width': region['width'],
                        'height': region['height'],
                    }
                else:
                    # monitors[0] is all monitors combined
                    if monitor_index < 1 or monitor_index >= len(sct.monitors):
                        raise ScreenCaptureError(f"Monitor {monitor_index} not found")
                    monitor = sct.monitors[monitor_index]

                screenshot = sct.grab(monitor)
                img = Image.frombytes("RGB", screenshot.size, screenshot.rgb)

                buffer = io.BytesIO()
                img.save(buffer, "PNG")
                return buffer.getvalue()

        except ScreenCaptureError:
            raise
        except OSError as e:
            if "cannot connect to display" in str(e).lower():
                raise ScreenCaptureError("Cannot connect to display server. Is X11 running?") from e
            raise ScreenCaptureError(f"Display server error: {e}") from e
        except Exception as e:
            raise ScreenCaptureError(f"Failed to capture screenshot: {e}") from e

    def get_active_window(self) -> Tuple[Optional[str], Optional[str]]:
        """Return (window_id, window_title) of the focused window.

        Both are None when xdotool is unavailable or there is no X11 display.
        """
        window_id = self._xdotool("getactivewindow")
        if window_id is None:
            return None, None
        return window_id, self._xdotool("getwindowname", window_id)

    def _get_window_geometry(self, window_id: Optional[str]) -> Optional[Dict]:
        if not window_id:
            return None
        output = self._xdotool("getwindowgeometry", "--shell", window_id)
        if output is None:
            return None

        values = {}
        for line in output.splitlines():
            if '=' in line:
                key, value = line.split('=', 1)
                values[key.strip()] = value.strip()
        try:
            return {
                'left': int(values['X']),
                'top': int(values['Y']),
                'width': int(values['WIDTH']),
                'height': int(values['HEIGHT']),
            }
        except (KeyError, ValueError):
            return None

    def _xdotool(self, *args: str) -> Optional[str]:
        try:
            result = subprocess.run(
                ["xdotool", *args],
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError, subprocess.SubprocessError) as e:
            logger.debug(f"xdotool {' '.join(args)} failed: {e}")
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip()
