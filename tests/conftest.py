"""Pytest configuration and fixtures for voxflow tests."""
import os
import sys
from types import SimpleNamespace

import numpy as np
import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


class FakeClock:
    """Manually advanced replacement for time.monotonic."""

    def __init__(self, start: float = 0.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeStream:
    """Stands in for sounddevice.InputStream; tests push buffers with feed()."""

    def __init__(self, samplerate, channels, dtype, device, callback):
        self.samplerate = samplerate
        self.channels = channels
        self.callback = callback
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    def close(self):
        self.closed = True

    def feed(self, chunk):
        self.callback(chunk, len(chunk), None, None)


class FakeDevice:
    """Input device description plus a stream factory that records what it opened."""

    def __init__(self, rate=16000, channels=1, fail_query=False, fail_open=False):
        self.rate = rate
        self.channels = channels
        self.fail_query = fail_query
        self.fail_open = fail_open
        self.streams = []

    def query(self, device=None, kind=None):
        if self.fail_query:
            raise RuntimeError("no such device")
        return {"name": "fake mic", "default_samplerate": self.rate, "max_input_channels": self.channels}

    def open(self, **kwargs):
        if self.fail_open:
            raise RuntimeError("device busy")
        stream = FakeStream(**kwargs)
        self.streams.append(stream)
        return stream

    @property
    def stream(self):
        return self.streams[-1]


class FakeWhisper:
    """Model handle returning fixed segments."""

    def __init__(self, segments=(" hello", " world"), error=None):
        self.segments = list(segments)
        self.error = error
        self.calls = []

    def transcribe(self, samples):
        self.calls.append(len(samples))
        if self.error is not None:
            raise self.error
        return [SimpleNamespace(text=text) for text in self.segments]


class RecordingSink:
    def __init__(self):
        self.texts = []

    def insert_text(self, text):
        self.texts.append(text)


class RecordingStatus:
    def __init__(self):
        self.events = []

    def show(self, state):
        self.events.append(("show", state.value))

    def error(self, message):
        self.events.append(("error", message))

    def dismiss(self):
        self.events.append(("dismiss", None))


@pytest.fixture
def sample_rate():
    """Standard sample rate for audio tests."""
    return 16000


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_device():
    return FakeDevice()


@pytest.fixture
def tone(sample_rate):
    """Factory for a (frames, channels) float32 chunk of a sine at the given amplitude."""

    def make(duration=0.125, amplitude=0.2, rate=sample_rate, channels=1, frequency=440):
        t = np.arange(int(round(rate * duration))) / rate
        mono = (np.sin(2 * np.pi * frequency * t) * amplitude).astype(np.float32)
        return np.repeat(mono[:, None], channels, axis=1)

    return make


@pytest.fixture
def silence(sample_rate):
    """Factory for a (frames, channels) chunk of near-silence."""

    def make(duration=0.125, rate=sample_rate, channels=1):
        frames = int(round(rate * duration))
        rng = np.random.default_rng(0)
        noise = (rng.standard_normal(frames) * 0.001).astype(np.float32)
        return np.repeat(noise[:, None], channels, axis=1)

    return make


@pytest.fixture
def model_folder(tmp_path):
    """Custom model folder containing the marker for model 'test'."""
    folder = tmp_path / "custom-model"
    folder.mkdir()
    (folder / "ggml-test.bin").write_bytes(b"ggml")
    return folder


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (require network or a microphone)")
    config.addinivalue_line("markers", "slow: Slow tests")
