"""
Audio capture pipeline.

Microphone buffers arrive at the device's native format on the PortAudio
thread, are converted to mono 16kHz float32, appended to the session buffer
and fed to an energy based silence detector that ends the session once the
speaker stops talking.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import numpy as np

from voxflow.config import (
    AUDIO_CHANNELS,
    DEFAULT_SILENCE_DURATION,
    SAMPLE_RATE,
    SILENCE_THRESHOLD,
)
from voxflow.errors import DeviceUnavailable

logger = logging.getLogger(__name__)

_EMPTY = np.empty(0, dtype=np.float32)


def resample(samples: np.ndarray, source_rate: float, target_rate: int = SAMPLE_RATE) -> np.ndarray:
    """
    Convert a chunk of PCM samples to mono float32 at target_rate.

    Args:
        samples: Array shaped (frames,) or (frames, channels). Integer PCM is
            scaled to [-1, 1].
        source_rate: Sample rate of the input in Hz
        target_rate: Sample rate of the output in Hz

    Returns:
        1-D float32 array of round(frames * target_rate / source_rate) samples.
        Input already in the target format is returned as is (no copy).
        Returns an empty array if the input cannot be converted.
    """
    try:
        data = np.asarray(samples)
        if source_rate <= 0 or target_rate <= 0:
            raise ValueError(f"invalid sample rate {source_rate} -> {target_rate}")
        if data.ndim > 2:
            raise ValueError(f"unsupported shape {data.shape}")

        if data.ndim == 2:
            if data.shape[1] == AUDIO_CHANNELS:
                data = data.reshape(-1)
            else:
                data = data.mean(axis=1)

        if np.issubdtype(data.dtype, np.integer):
            data = data.astype(np.float32) / float(np.iinfo(data.dtype).max)
        elif data.dtype != np.float32:
            data = data.astype(np.float32)

        if source_rate == target_rate or data.size == 0:
            return data

        target_len = int(round(data.size * target_rate / source_rate))
        x_old = np.arange(data.size, dtype=np.float64) / float(source_rate)
        x_new = np.arange(target_len, dtype=np.float64) / float(target_rate)
        return np.interp(x_new, x_old, data).astype(np.float32, copy=False)
    except (TypeError, ValueError, MemoryError, FloatingPointError) as e:
        logger.debug(f"Dropping chunk, conversion failed: {e}")
        return _EMPTY


class SilenceDetector:
    """
    Energy based voice activity detector.

    Only reports silence after speech has been heard, so ambient noise before
    the speaker starts never ends a session. Reports once per continuous run
    of quiet chunks.
    """

    def __init__(
        self,
        threshold: float = SILENCE_THRESHOLD,
        silence_duration: float = DEFAULT_SILENCE_DURATION,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.silence_duration = silence_duration
        self._clock = clock
        self.has_speech_started = False
        self.silence_started_at: float | None = None
        self._fired = False

    @staticmethod
    def rms(samples: np.ndarray) -> float:
        return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))

    def detect(self, samples: np.ndarray) -> bool:
        """Return True when silence has lasted silence_duration after speech."""
        if len(samples) == 0:
            return False

        if self.rms(samples) > self.threshold:
            self.has_speech_started = True
            self.silence_started_at = None
            self._fired = False
            return False

        if not self.has_speech_started or self._fired:
            return False

        now = self._clock()
        if self.silence_started_at is None:
            self.silence_started_at = now

        if now - self.silence_started_at >= self.silence_duration:
            self._fired = True
            return True
        return False

    def reset(self) -> None:
        self.has_speech_started = False
        self.silence_started_at = None
        self._fired = False


class AudioCapture:
    """
    Owns the input stream for one recording session at a time.

    The stream is opened at the device's native rate and channel count; every
    buffer is resampled before it is stored, so stop() always returns mono
    16kHz float32 in capture order.
    """

    def __init__(
        self,
        silence_duration: float = DEFAULT_SILENCE_DURATION,
        silence_threshold: float = SILENCE_THRESHOLD,
        device: int | str | None = None,
        stream_factory: Callable[..., object] | None = None,
        device_query: Callable[..., dict] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.device = device
        self.detector = SilenceDetector(silence_threshold, silence_duration, clock)
        self._stream_factory = stream_factory
        self._device_query = device_query
        self._stream = None
        self._source_rate: float = SAMPLE_RATE
        self._chunks: list[np.ndarray] = []
        self._on_silence: Callable[[], None] | None = None
        self._armed = False
        self._active = False
        # Guards the one-shot silence signal against a late callback during stop()
        self._guard = threading.RLock()

    @property
    def is_active(self) -> bool:
        return self._active

    def _query_device(self) -> tuple[float, int]:
        if self._device_query is None:
            import sounddevice as sd

            self._device_query = sd.query_devices
        try:
            info = self._device_query(self.device, kind="input")
        except Exception as e:
            raise DeviceUnavailable(f"No input device available: {e}") from e

        rate = float(info.get("default_samplerate") or SAMPLE_RATE)
        channels = int(info.get("max_input_channels") or 0)
        if channels < 1:
            raise DeviceUnavailable(f"Device {info.get('name', self.device)!r} has no input channels")
        return rate, min(channels, 2)

    def _open_stream(self) -> None:
        rate, channels = self._query_device()

        if self._stream_factory is None:
            # PortAudio is only needed once a device is actually opened
            import sounddevice as sd

            self._stream_factory = sd.InputStream

        try:
            stream = self._stream_factory(
                samplerate=rate,
                channels=channels,
                dtype=np.float32,
                device=self.device,
                callback=self._audio_callback,
            )
            stream.start()
        except Exception as e:
            raise DeviceUnavailable(f"Failed to open input stream: {e}") from e

        self._source_rate = rate
        self._stream = stream
        logger.info(f"Audio stream started ({int(rate)}Hz, {channels}ch)")

    def start(self, on_silence_detected: Callable[[], None]) -> None:
        """
        Begin a capture session.

        Args:
            on_silence_detected: Invoked at most once per session, on the
                audio thread, when the speaker has gone quiet.
        """
        if self._active:
            self.stop()

        self._chunks = []
        self.detector.reset()
        with self._guard:
            self._on_silence = on_silence_detected
            self._armed = True
        self._active = True

        try:
            self._open_stream()
        except DeviceUnavailable as e:
            # Session continues with no samples; stop() returns an empty buffer
            logger.error(f"Capture unavailable: {e}")
            self._stream = None

    def stop(self) -> np.ndarray:
        """End the session and hand off everything captured so far."""
        self._active = False
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                logger.debug(f"Error closing audio stream: {e}")

        with self._guard:
            self._armed = False
            self._on_silence = None
        self.detector.reset()

        chunks, self._chunks = self._chunks, []
        if not chunks:
            return _EMPTY.copy()
        return np.concatenate(chunks)

    def _audio_callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        """Callback for audio stream - runs in audio thread."""
        if not self._active:
            return
        if status:
            logger.debug(f"Audio stream status: {status}")

        chunk = resample(indata.copy(), self._source_rate, SAMPLE_RATE)
        if chunk.size == 0:
            return
        self._chunks.append(chunk)

        if self.detector.detect(chunk):
            with self._guard:
                if not self._armed:
                    return
                self._armed = False
                callback = self._on_silence
                if callback is not None:
                    callback()
