"""
Whisper model lifecycle: locate, download, load and run.

The model is a whisper.cpp ggml file. It is looked up in a user supplied
folder first, then in the local cache (~/.voxflow/models), and downloaded
from the Hugging Face hub into the cache when neither has it.

Download and load are slow and shared by every caller in the process, so
each runs at most once at a time; callers that arrive while one is in
flight wait for it and get the same result.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Union

import httpx
import numpy as np

from voxflow.config import (
    DEFAULT_WHISPER_MODEL,
    HUB_URL,
    MODEL_REPO_ID,
    MODEL_REVISION,
    MODELS_DIR,
    Settings,
)
from voxflow.errors import ModelUnavailable, TranscriptionFailed

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_BYTES = 1 << 20
DOWNLOAD_TIMEOUT = httpx.Timeout(60.0, connect=10.0)

ProgressCallback = Callable[[float], None]


class ModelState(Enum):
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    DOWNLOADING = "downloading"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class CustomPath:
    path: Path


@dataclass(frozen=True)
class CachedPath:
    path: Path


@dataclass(frozen=True)
class NotResolved:
    pass


ModelLocation = Union[CustomPath, CachedPath, NotResolved]


class _Progress:
    """Clamps reported fractions to [0, 1] and never lets them go backwards."""

    def __init__(self, callback: ProgressCallback | None) -> None:
        self.callback = callback
        self.value = 0.0

    def __call__(self, fraction: float) -> None:
        fraction = min(max(fraction, self.value), 1.0)
        self.value = fraction
        if self.callback is None:
            return
        try:
            self.callback(fraction)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")


def _content_length(response: httpx.Response) -> int:
    """Declared size in bytes, 0 when missing or unparseable."""
    try:
        return max(int(response.headers.get("content-length") or 0), 0)
    except ValueError:
        return 0


def load_whisper_cpp(path: Path):
    """Load a ggml model file with whisper.cpp."""
    # Import here to avoid loading whisper.cpp until a model is needed
    from pywhispercpp.model import Model as WhisperModel

    return WhisperModel(str(path), print_realtime=False, print_progress=False)


class ModelManager:
    """Single owner of the Whisper model for the whole process."""

    def __init__(
        self,
        model_name: str = DEFAULT_WHISPER_MODEL,
        custom_folder: str | Path | None = None,
        cache_dir: Path = MODELS_DIR,
        repo_id: str = MODEL_REPO_ID,
        revision: str = MODEL_REVISION,
        hub_url: str = HUB_URL,
        files: Iterable[str] | None = None,
        loader: Callable[[Path], object] = load_whisper_cpp,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model_name = model_name
        self.marker = f"ggml-{model_name}.bin"
        self.files = tuple(files) if files else (self.marker,)
        if self.marker not in self.files:
            self.files = self.files + (self.marker,)
        self.custom_folder = Path(custom_folder).expanduser() if custom_folder else None
        self.cache_dir = Path(cache_dir)
        self.repo_id = repo_id
        self.revision = revision
        self.hub_url = hub_url.rstrip("/")

        self._loader = loader
        self._transport = transport
        self._lock = threading.Lock()
        self._inference_lock = threading.Lock()
        self._location: ModelLocation = NotResolved()
        self._model = None
        self._resolving = False
        self._downloading: Future | None = None
        self._loading: Future | None = None
        self._failure: str | None = None
        self.progress = 0.0

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ModelManager":
        return cls(
            model_name=settings.whisper_model,
            custom_folder=settings.custom_model_folder,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ModelState:
        with self._lock:
            if self._model is not None:
                return ModelState.READY
            if self._loading is not None:
                return ModelState.LOADING
            if self._downloading is not None:
                return ModelState.DOWNLOADING
            if self._resolving:
                return ModelState.RESOLVING
            if self._failure is not None:
                return ModelState.FAILED
            if not isinstance(self._location, NotResolved):
                return ModelState.RESOLVED
            return ModelState.UNRESOLVED

    @property
    def failure(self) -> str | None:
        return self._failure

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    @property
    def repo_dir(self) -> Path:
        return self.cache_dir / f"models--{self.repo_id.replace('/', '--')}"

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _find_custom(self) -> Path | None:
        if self.custom_folder is None:
            return None
        candidate = self.custom_folder / self.marker
        return candidate if candidate.is_file() else None

    def _find_cached(self) -> Path | None:
        if not self.cache_dir.is_dir():
            return None
        for candidate in sorted(self.cache_dir.rglob(self.marker)):
            if candidate.is_file():
                return candidate
        return None

    def is_downloaded(self) -> bool:
        """Check the custom folder, then the cache. No network access."""
        return self._find_custom() is not None or self._find_cached() is not None

    def resolve(self) -> ModelLocation:
        """Find the model on disk: custom folder, then cache."""
        with self._lock:
            if not isinstance(self._location, NotResolved):
                return self._location
            self._resolving = True

        try:
            custom = self._find_custom()
            if custom is not None:
                location: ModelLocation = CustomPath(custom)
            else:
                cached = self._find_cached()
                location = CachedPath(cached) if cached is not None else NotResolved()
        finally:
            with self._lock:
                self._resolving = False

        if not isinstance(location, NotResolved):
            with self._lock:
                self._location = location
            logger.info(f"Model resolved: {location}")
        return location

    def invalidate(self) -> None:
        """Forget the resolved location and loaded model (e.g. after a model change)."""
        with self._lock:
            self._location = NotResolved()
            self._model = None
            self._failure = None
        logger.info("Model invalidated, will resolve again on next use")

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def _file_url(self, name: str) -> str:
        return f"{self.hub_url}/{self.repo_id}/resolve/{self.revision}/{name}"

    def _fetch(self, report: _Progress) -> Path:
        """Download the file set into the cache; the marker file appears last."""
        target_dir = self.repo_dir / "snapshots" / self.revision
        parts: list[Path] = []

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            with httpx.Client(
                timeout=DOWNLOAD_TIMEOUT,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                sizes = {}
                for name in self.files:
                    response = client.head(self._file_url(name))
                    response.raise_for_status()
                    sizes[name] = _content_length(response)
                total = sum(sizes.values())
                logger.info(f"Downloading {self.repo_id} ({total / 1e6:.0f}MB, {len(self.files)} files)")

                done = 0
                report(0.0)
                for index, name in enumerate(self.files):
                    part = target_dir / f"{name}.part"
                    parts.append(part)
                    with client.stream("GET", self._file_url(name)) as response:
                        response.raise_for_status()
                        with open(part, "wb") as f:
                            for block in response.iter_bytes(DOWNLOAD_CHUNK_BYTES):
                                f.write(block)
                                done += len(block)
                                if total:
                                    report(done / total)
                    if not total:
                        report((index + 1) / len(self.files))

            # Marker last, so an interrupted download never looks complete
            for name in sorted(self.files, key=lambda n: n == self.marker):
                (target_dir / f"{name}.part").replace(target_dir / name)
        except Exception as e:
            for part in parts:
                part.unlink(missing_ok=True)
            raise ModelUnavailable(f"Model download failed: {e}") from e

        report(1.0)
        return target_dir / self.marker

    def download(self, progress: ProgressCallback | None = None) -> ModelLocation:
        """
        Make sure the model is on disk.

        Args:
            progress: Called with the downloaded fraction in [0, 1],
                never decreasing, ending at 1.0

        Returns:
            Where the model lives

        Raises:
            ModelUnavailable: If the download fails
        """
        report = _Progress(progress)

        if self.custom_folder is not None:
            # A user supplied folder is never downloaded into
            report(1.0)
            return CustomPath(self.custom_folder / self.marker)

        location = self.resolve()
        if not isinstance(location, NotResolved):
            report(1.0)
            return location

        with self._lock:
            finished = self._location
            pending = self._downloading
            owner = pending is None and isinstance(finished, NotResolved)
            if owner:
                pending = self._downloading = Future()
                self._failure = None
                self.progress = 0.0

        if not isinstance(finished, NotResolved):
            # Another caller completed the download after our resolve()
            report(1.0)
            return finished

        if not owner:
            logger.info("Model download already in progress, waiting")
            location = pending.result()
            report(1.0)
            return location

        def track(fraction: float) -> None:
            self.progress = fraction
            report(fraction)

        try:
            path = self._fetch(_Progress(track))
        except ModelUnavailable as e:
            self._finish_download(pending, error=e)
            raise
        except Exception as e:
            error = ModelUnavailable(f"Model download failed: {e}")
            self._finish_download(pending, error=error)
            raise error from e

        location = CachedPath(path)
        with self._lock:
            self._location = location
            self._downloading = None
        pending.set_result(location)
        logger.info(f"Model downloaded to {path}")
        return location

    def _finish_download(self, pending: Future, error: ModelUnavailable) -> None:
        logger.error(str(error))
        with self._lock:
            self._downloading = None
            self._failure = str(error)
        pending.set_exception(error)

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def _effective_path(self, location: ModelLocation | str | Path | None) -> Path:
        """Explicit argument > custom folder > resolved location > cache lookup."""
        path: Path | None = None
        if isinstance(location, (CustomPath, CachedPath)):
            path = location.path
        elif isinstance(location, (str, Path)):
            path = Path(location).expanduser()

        if path is not None and path.is_dir():
            path = path / self.marker

        if path is None:
            path = self._find_custom()
        if path is None and not isinstance(self._location, NotResolved):
            path = self._location.path
        if path is None:
            path = self._find_cached()

        if path is None or not path.is_file():
            raise ModelUnavailable(
                f"Model {self.marker} not found"
                + (f" at {path}" if path is not None else " locally; download it first")
            )
        return path

    def load(self, location: ModelLocation | str | Path | None = None):
        """
        Load the model into memory. No-op if already loaded.

        Raises:
            ModelUnavailable: If no model file can be found or loading fails
        """
        with self._lock:
            if self._model is not None:
                return self._model
            pending = self._loading
            owner = pending is None
            if owner:
                pending = self._loading = Future()
                self._failure = None

        if not owner:
            logger.info("Model load already in progress, waiting")
            return pending.result()

        path = None
        try:
            path = self._effective_path(location)
            logger.info(f"Loading whisper model from {path}...")
            model = self._loader(path)
        except ModelUnavailable as e:
            self._finish_load(pending, error=e)
            raise
        except Exception as e:
            error = ModelUnavailable(f"Failed to load model from {path}: {e}")
            self._finish_load(pending, error=error)
            raise error from e

        with self._lock:
            self._model = model
            self._loading = None
            if isinstance(self._location, NotResolved):
                self._location = CustomPath(path) if path == self._find_custom() else CachedPath(path)
        pending.set_result(model)
        logger.info(f"Whisper model '{self.model_name}' loaded")
        return model

    def _finish_load(self, pending: Future, error: ModelUnavailable) -> None:
        logger.error(str(error))
        with self._lock:
            self._loading = None
            self._failure = str(error)
        pending.set_exception(error)

    def ensure_ready(self, progress: ProgressCallback | None = None):
        """Download if needed, then load."""
        if self._model is not None:
            return self._model
        return self.load(self.download(progress))

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def _run_inference(self, model, samples: np.ndarray) -> str:
        try:
            with self._inference_lock:
                segments = model.transcribe(np.asarray(samples, dtype=np.float32))
        except Exception as e:
            raise TranscriptionFailed(f"Inference failed: {e}") from e
        return "".join(segment.text for segment in segments).strip()

    def transcribe(self, samples: np.ndarray) -> str:
        """Transcribe 16kHz mono float32 samples. Returns "" on any failure."""
        if samples is None or len(samples) == 0:
            return ""

        try:
            model = self.load()
        except ModelUnavailable as e:
            logger.error(f"Cannot transcribe, model unavailable: {e}")
            return ""

        try:
            return self._run_inference(model, samples)
        except TranscriptionFailed as e:
            logger.error(f"Transcription error: {e}")
            return ""
