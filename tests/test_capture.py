"""Tests for ScreenCapture with xdotool and the grab stubbed out."""

import pytest

from recorder.capture import ScreenCapture, ScreenCaptureError


class XdotoolStub:
    def __init__(self):
        self.calls = []

    def __call__(self, *args):
        self.calls.append(args)
        if args[0] == "getactivewindow":
            return "0x20"
        if args[0] == "getwindowname":
            return "Terminal"
        if args[0] == "getwindowgeometry":
            return "WINDOW=32\nX=10\nY=20\nWIDTH=640\nHEIGHT=480\nSCREEN=0"
        return None


@pytest.fixture
def xdotool():
    return XdotoolStub()


@pytest.fixture
def capture(xdotool, monkeypatch):
    capture = ScreenCapture()
    capture.grabs = []

    def grab_png(index, region=None):
        capture.grabs.append((index, region))
        return b"png"

    monkeypatch.setattr(capture, "_xdotool", xdotool)
    monkeypatch.setattr(capture, "grab_png", grab_png)
    return capture


def test_screen_capture_queries_window(capture, xdotool):
    result = capture.capture_source(1)
    assert (result.window_id, result.window_name, result.image) == ("0x20", "Terminal", b"png")
    assert [call[0] for call in xdotool.calls] == ["getactivewindow", "getwindowname"]
    assert capture.grabs == [(1, None)]


def test_known_window_skips_xdotool(capture, xdotool):
    result = capture.capture_source(1, "screen", window=("0x30", "Editor"))
    assert (result.window_id, result.window_name) == ("0x30", "Editor")
    assert xdotool.calls == []


def test_window_kind_uses_geometry(capture):
    capture.capture_source(1, "window")
    assert capture.grabs == [(1, {"left": 10, "top": 20, "width": 640, "height": 480})]


def test_grab_failure_returns_none(capture, monkeypatch):
    def fail(index, region=None):
        raise ScreenCaptureError("no display")

    monkeypatch.setattr(capture, "grab_png", fail)
    assert capture.capture_source(1) is None


def test_unknown_kind_returns_none(capture):
    assert capture.capture_source(1, "region") is None
