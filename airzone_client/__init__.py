"""
Air Zone Client - Webcam hand tracking to air-lane controller input.

This module runs next to a controller-emulation server, turns hand heights
seen by the camera into six discrete "air" lanes, and streams the lane state
to the server over a WebSocket link kept alive by a heartbeat.
"""

__version__ = "1.0.0"
