"""
input — Best-effort sensor collectors.

Single-frame webcam capture, location providers and the ambient sound level
meter. Every collector may fail with SensorUnavailableError; callers absorb
it and carry on without the reading.
"""
