"""
input/audio_level.py — Ambient sound level meter.

Converts microphone sample chunks to an approximate sound level in dB::

    rms   = sqrt(mean(x²))            x normalised to [-1, 1]
    level = round(20·log10(rms) + 90)  rms floored at 1e-6

The meter only holds the latest reading; the orchestrator samples it when a
request is built. The web boundary feeds it from POST /audio-level and the
``audio`` WebSocket action, either with raw chunks or with a level already
measured by the client.
"""

from __future__ import annotations

import math
import threading
from typing import Optional

import numpy as np

_RMS_FLOOR: float = 1e-6
_DB_OFFSET: float = 90.0


def level_from_samples(samples: np.ndarray) -> float:
    """
    Compute the dB level of one chunk.

    Integer PCM is normalised by its dtype range; ``uint8`` is treated as
    centred on 128. Float input is assumed to be in ``[-1, 1]`` already.

    Args:
        samples: 1-D (or flattenable) array of audio samples.

    Returns:
        The rounded level; an empty chunk reads as silence.
    """
    data = np.asarray(samples)
    if data.size == 0:
        return round(20.0 * math.log10(_RMS_FLOOR) + _DB_OFFSET)

    if data.dtype == np.uint8:
        norm = (data.astype(np.float64) - 128.0) / 128.0
    elif np.issubdtype(data.dtype, np.integer):
        norm = data.astype(np.float64) / float(np.iinfo(data.dtype).max)
    else:
        norm = data.astype(np.float64)

    rms = float(np.sqrt(np.mean(np.square(norm))))
    rms = max(rms, _RMS_FLOOR)
    return round(20.0 * math.log10(rms) + _DB_OFFSET)


class AmbientAudioMonitor:
    """Holds the most recent ambient level; fed from any audio thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._level: Optional[float] = None

    def feed(self, samples: np.ndarray) -> float:
        """Update the reading from one chunk and return it."""
        level = level_from_samples(samples)
        with self._lock:
            self._level = level
        return level

    def set_level(self, level: float) -> float:
        """Store a level measured elsewhere (e.g. by a browser meter)."""
        level = round(float(level))
        with self._lock:
            self._level = level
        return level

    @property
    def level(self) -> Optional[float]:
        """Latest level in dB, or None if nothing has been fed yet."""
        with self._lock:
            return self._level

    def clear(self) -> None:
        with self._lock:
            self._level = None
